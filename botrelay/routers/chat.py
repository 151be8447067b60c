# botrelay/routers/chat.py
from fastapi import APIRouter, Depends, Query, Request

from botrelay.core.api_keys import KeyGrant
from botrelay.core.chat import ChatService
from botrelay.core.config import DEFAULT_HISTORY_LIMIT
from botrelay.deps import get_chat_service, require_api_key
from botrelay.routers.sse import event_stream_response
from botrelay.schemas.chat import (
    BotSummary,
    CloseConversationResponse,
    ConversationHistoryResponse,
    ConversationOut,
    MessageOut,
    SendMessageRequest,
    SendMessageResponse,
    StartChatRequest,
    StartChatResponse,
)

router = APIRouter()


@router.post("/start", response_model=StartChatResponse)
async def start_conversation(
    payload: StartChatRequest,
    grant: KeyGrant = Depends(require_api_key),
    chat: ChatService = Depends(get_chat_service),
):
    """
    Start, or resume, the conversation between a bot and an end user.

    - **botId**: Must be the bot the API key belongs to.
    - **userId**: The caller's own identifier for the end user.
    - **userName** / **userEmail**: Optional, stored on first start only.

    A user has at most one active conversation per bot, so calling this twice
    returns the same `conversationId`. A new conversation opens with the bot's
    welcome message, if it has one.
    """
    conversation, bot, messages = await chat.start(
        grant,
        bot_id=payload.bot_id,
        user_id=payload.user_id,
        user_name=payload.user_name,
        user_email=payload.user_email,
    )
    return StartChatResponse(
        conversation_id=conversation.id,
        bot=BotSummary.model_validate(bot),
        messages=[MessageOut.model_validate(m) for m in messages],
    )


@router.post("/{conversation_id}/messages", response_model=SendMessageResponse)
async def send_message(
    conversation_id: str,
    payload: SendMessageRequest,
    grant: KeyGrant = Depends(require_api_key),
    chat: ChatService = Depends(get_chat_service),
):
    """
    Send a message and wait for the bot's full reply.

    If the upstream provider fails, the reply is the bot's fallback message and
    `error` carries the reason. The call itself still succeeds.
    """
    user_message, bot_message, error = await chat.send_message(
        grant, conversation_id, payload.message, payload.files
    )
    return SendMessageResponse(
        user_message=MessageOut.model_validate(user_message),
        bot_message=MessageOut.model_validate(bot_message),
        error=error,
    )


@router.post("/{conversation_id}/messages/stream")
async def stream_message(
    conversation_id: str,
    payload: SendMessageRequest,
    request: Request,
    grant: KeyGrant = Depends(require_api_key),
    chat: ChatService = Depends(get_chat_service),
):
    """
    Send a message and receive the reply as the provider's `text/event-stream`.

    Events are relayed byte for byte. The full reply is saved to the
    conversation once the stream ends.
    """
    stream = await chat.stream_message(
        grant,
        conversation_id,
        payload.message,
        payload.files,
        is_disconnected=request.is_disconnected,
    )
    return event_stream_response(stream)


@router.get("/{conversation_id}", response_model=ConversationHistoryResponse)
async def get_conversation(
    conversation_id: str,
    limit: int = Query(DEFAULT_HISTORY_LIMIT, ge=1, le=500),
    offset: int = Query(0, ge=0),
    grant: KeyGrant = Depends(require_api_key),
    chat: ChatService = Depends(get_chat_service),
):
    """
    Return a conversation with its messages, oldest first.
    """
    conversation, messages = await chat.history(grant, conversation_id, limit=limit, offset=offset)
    return ConversationHistoryResponse(
        conversation=ConversationOut.model_validate(conversation),
        bot=BotSummary.model_validate(grant.bot),
        messages=[MessageOut.model_validate(m) for m in messages],
    )


@router.patch("/{conversation_id}/close", response_model=CloseConversationResponse)
async def close_conversation(
    conversation_id: str,
    grant: KeyGrant = Depends(require_api_key),
    chat: ChatService = Depends(get_chat_service),
):
    """
    Close a conversation. Closing an already closed conversation succeeds too.
    """
    await chat.close(grant, conversation_id)
    return CloseConversationResponse(message="Conversation closed")
