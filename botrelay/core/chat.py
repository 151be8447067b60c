"""Chat orchestration: key grant -> conversation -> upstream -> persistence."""

from __future__ import annotations

from typing import Any, AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from botrelay.core.api_keys import KeyGrant
from botrelay.core.config import DEFAULT_FALLBACK_MESSAGE, DEFAULT_HISTORY_LIMIT
from botrelay.core.conversations import ConversationStore
from botrelay.core.errors import Forbidden, UpstreamError
from botrelay.core.logging import get_logger
from botrelay.core.relay import DisconnectProbe, StreamRelay, StreamTranscript, single_error_stream
from botrelay.core.types import MessageRole, ResponseMode
from botrelay.core.upstream import UpstreamClient, UpstreamConfig, build_chat_payload
from botrelay.models.bot import Bot
from botrelay.models.conversation import Conversation
from botrelay.models.message import Message

logger = get_logger(__name__)

CHAT_SCOPE = "chat"


class ChatService:
    """One request's view of the chat pipeline.

    ``db`` serves the request itself. Streamed replies finish after the
    request handler has returned, so they are persisted through a fresh
    session from ``session_factory``.
    """

    def __init__(
        self,
        db: AsyncSession,
        upstream: UpstreamClient,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self._db = db
        self._store = ConversationStore(db)
        self._upstream = upstream
        self._session_factory = session_factory

    async def _load_owned(self, grant: KeyGrant, conversation_id: str) -> Conversation:
        conversation = await self._store.get(conversation_id)
        if conversation.bot_id != grant.bot.id:
            raise Forbidden("Conversation belongs to another bot")
        return conversation

    async def _load_sendable(self, grant: KeyGrant, conversation_id: str) -> Conversation:
        await self._load_owned(grant, conversation_id)
        return await self._store.get_active_for_send(conversation_id)

    async def start(
        self,
        grant: KeyGrant,
        bot_id: str,
        user_id: str,
        user_name: Optional[str] = None,
        user_email: Optional[str] = None,
    ) -> tuple[Conversation, Bot, list[Message]]:
        grant.require_scope(CHAT_SCOPE)
        if bot_id != grant.bot.id:
            raise Forbidden("API key is not valid for this bot")

        conversation, _ = await self._store.get_or_create_active(grant.bot, user_id, user_name, user_email)
        messages = await self._store.list_messages(conversation.id, limit=DEFAULT_HISTORY_LIMIT)
        return conversation, grant.bot, messages

    async def send_message(
        self,
        grant: KeyGrant,
        conversation_id: str,
        message: str,
        files: Optional[list[Any]] = None,
    ) -> tuple[Message, Message, Optional[str]]:
        """Blocking send. Upstream failures come back as a fallback reply, not an exception."""
        grant.require_scope(CHAT_SCOPE)
        conversation = await self._load_sendable(grant, conversation_id)
        bot = grant.bot

        user_message = await self._store.append_message(
            conversation.id,
            MessageRole.USER,
            message,
            metadata={"files": files} if files else None,
        )

        try:
            reply = await self._upstream.chat_blocking(
                UpstreamConfig.for_bot(bot),
                query=message,
                user=conversation.user_id,
                conversation_id=conversation.upstream_conversation_id,
                files=files,
            )
        except UpstreamError as exc:
            logger.warning("chat_fallback_reply", conversation_id=conversation.id, error=exc.message)
            bot_message = await self._store.append_message(
                conversation.id,
                MessageRole.ASSISTANT,
                bot.fallback_message or DEFAULT_FALLBACK_MESSAGE,
            )
            return user_message, bot_message, exc.message

        await self._store.record_upstream_handle(conversation.id, reply.conversation_id)
        bot_message = await self._store.append_message(
            conversation.id,
            MessageRole.ASSISTANT,
            reply.answer,
            upstream_message_id=reply.message_id,
            metadata=reply.metadata or None,
        )
        return user_message, bot_message, None

    async def stream_message(
        self,
        grant: KeyGrant,
        conversation_id: str,
        message: str,
        files: Optional[list[Any]] = None,
        is_disconnected: Optional[DisconnectProbe] = None,
    ) -> AsyncIterator[bytes]:
        """Streaming send. Returns the byte stream to hand to the response.

        The user message is stored before the upstream call. The assistant
        message is stored once the relay finishes cleanly.
        """
        grant.require_scope(CHAT_SCOPE)
        conversation = await self._load_sendable(grant, conversation_id)
        bot = grant.bot

        await self._store.append_message(
            conversation.id,
            MessageRole.USER,
            message,
            metadata={"files": files} if files else None,
        )

        payload = build_chat_payload(
            message,
            conversation.user_id,
            ResponseMode.STREAMING,
            conversation_id=conversation.upstream_conversation_id,
            files=files,
        )
        try:
            source = await self._upstream.open_stream(UpstreamConfig.for_bot(bot), payload)
        except UpstreamError as exc:
            logger.warning("chat_stream_open_failed", conversation_id=conversation.id, error=exc.message)
            return single_error_stream(exc.message)

        conversation_key = conversation.id
        fallback = bot.fallback_message or DEFAULT_FALLBACK_MESSAGE

        async def persist(transcript: StreamTranscript) -> None:
            # Every byte is already sent; a storage failure can only be logged.
            try:
                await self._persist_stream_reply(conversation_key, transcript, fallback)
            except Exception:
                logger.exception("chat_stream_persist_failed", conversation_id=conversation_key)

        relay = StreamRelay(on_complete=persist, is_disconnected=is_disconnected)
        return relay.stream(source)

    async def _persist_stream_reply(self, conversation_id: str, transcript: StreamTranscript, fallback: str) -> None:
        content = transcript.answer
        metadata: dict[str, Any] = dict(transcript.metadata)
        if transcript.error:
            metadata["error"] = transcript.error
            if not content:
                content = fallback

        if self._session_factory is None:
            await self._save_reply(self._store, conversation_id, transcript, content, metadata)
            return
        async with self._session_factory() as session:
            await self._save_reply(ConversationStore(session), conversation_id, transcript, content, metadata)

    @staticmethod
    async def _save_reply(
        store: ConversationStore,
        conversation_id: str,
        transcript: StreamTranscript,
        content: str,
        metadata: dict[str, Any],
    ) -> None:
        await store.record_upstream_handle(conversation_id, transcript.conversation_id)
        await store.append_message(
            conversation_id,
            MessageRole.ASSISTANT,
            content,
            upstream_message_id=transcript.message_id,
            metadata=metadata or None,
        )
        logger.info("chat_stream_persisted", conversation_id=conversation_id, answer_length=len(content))

    async def history(
        self,
        grant: KeyGrant,
        conversation_id: str,
        limit: int = DEFAULT_HISTORY_LIMIT,
        offset: int = 0,
    ) -> tuple[Conversation, list[Message]]:
        grant.require_scope(CHAT_SCOPE)
        conversation = await self._load_owned(grant, conversation_id)
        messages = await self._store.list_messages(conversation.id, limit=limit, offset=offset)
        return conversation, messages

    async def close(self, grant: KeyGrant, conversation_id: str) -> Conversation:
        grant.require_scope(CHAT_SCOPE)
        conversation = await self._load_owned(grant, conversation_id)
        return await self._store.close(conversation.id)

    async def proxy_blocking(self, grant: KeyGrant, payload: dict[str, Any]) -> dict[str, Any]:
        """``/v1/chat-messages`` in blocking mode: the provider's JSON, untouched."""
        grant.require_scope(CHAT_SCOPE)
        return await self._upstream.send_chat(UpstreamConfig.for_bot(grant.bot), payload)

    async def proxy_stream(
        self,
        grant: KeyGrant,
        payload: dict[str, Any],
        is_disconnected: Optional[DisconnectProbe] = None,
    ) -> AsyncIterator[bytes]:
        """``/v1/chat-messages`` in streaming mode: relayed, nothing stored locally."""
        grant.require_scope(CHAT_SCOPE)
        try:
            source = await self._upstream.open_stream(UpstreamConfig.for_bot(grant.bot), payload)
        except UpstreamError as exc:
            logger.warning("proxy_stream_open_failed", bot_id=grant.bot.id, error=exc.message)
            return single_error_stream(exc.message)
        return StreamRelay(is_disconnected=is_disconnected).stream(source)
