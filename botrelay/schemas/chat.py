# botrelay/schemas/chat.py
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

from botrelay.core.types import ConversationStatus, MessageRole


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class StartChatRequest(CamelModel):
    bot_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    user_name: Optional[str] = None
    user_email: Optional[EmailStr] = None


class SendMessageRequest(CamelModel):
    message: str = Field(..., min_length=1)
    files: Optional[List[Any]] = None


class BotSummary(CamelModel):
    id: str
    name: str
    avatar: Optional[str] = None
    welcome_message: Optional[str] = None


class MessageOut(CamelModel):
    id: int
    role: MessageRole
    content: str
    created_at: datetime
    metadata: Optional[Any] = Field(None, validation_alias="meta")


class ConversationOut(CamelModel):
    id: str
    bot_id: str
    user_id: str
    user_name: Optional[str] = None
    status: ConversationStatus
    upstream_conversation_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class StartChatResponse(CamelModel):
    conversation_id: str
    bot: BotSummary
    messages: List[MessageOut] = []


class SendMessageResponse(CamelModel):
    user_message: MessageOut
    bot_message: MessageOut
    error: Optional[str] = None


class ConversationHistoryResponse(CamelModel):
    conversation: ConversationOut
    bot: BotSummary
    messages: List[MessageOut] = []


class CloseConversationResponse(CamelModel):
    message: str
