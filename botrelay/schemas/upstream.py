# botrelay/schemas/upstream.py
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from botrelay.core.types import ResponseMode


class ChatMessagesRequest(BaseModel):
    """Body of ``POST /v1/chat-messages``, forwarded to the provider as is.

    Unknown fields are kept so newer provider options pass through.
    """

    model_config = ConfigDict(extra="allow")

    query: str
    user: str
    inputs: Dict[str, Any] = {}
    response_mode: ResponseMode = ResponseMode.BLOCKING
    conversation_id: Optional[str] = None
    files: Optional[List[Any]] = None
