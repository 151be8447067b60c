"""Conversation and message persistence."""

from __future__ import annotations

import uuid
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from botrelay.core.errors import NotFound
from botrelay.core.logging import get_logger
from botrelay.core.types import ConversationStatus, MessageRole
from botrelay.models.base import utcnow
from botrelay.models.bot import Bot
from botrelay.models.conversation import Conversation
from botrelay.models.message import Message

logger = get_logger(__name__)


class ConversationStore:
    """Conversations keyed by (bot, external user), with append-only messages."""

    def __init__(self, db: AsyncSession):
        self._db = db

    async def get(self, conversation_id: str) -> Conversation:
        conversation = await self._db.get(Conversation, conversation_id)
        if conversation is None:
            raise NotFound("Conversation not found")
        return conversation

    async def get_active_for_send(self, conversation_id: str) -> Conversation:
        """Load a conversation that can still take messages."""
        conversation = await self.get(conversation_id)
        if conversation.status != ConversationStatus.ACTIVE:
            raise NotFound("Conversation closed")
        return conversation

    async def find_active(self, bot_id: str, user_id: str) -> Optional[Conversation]:
        result = await self._db.execute(
            select(Conversation).where(
                Conversation.bot_id == bot_id,
                Conversation.user_id == user_id,
                Conversation.status == ConversationStatus.ACTIVE,
            )
        )
        return result.scalars().first()

    async def get_or_create_active(
        self,
        bot: Bot,
        user_id: str,
        user_name: Optional[str] = None,
        user_email: Optional[str] = None,
    ) -> tuple[Conversation, bool]:
        """Return the ACTIVE conversation for the pair, creating it if needed.

        The second element tells whether the conversation was created by this
        call. A new conversation gets the bot's welcome text as its first
        ASSISTANT message; an existing one is returned untouched.
        """
        existing = await self.find_active(bot.id, user_id)
        if existing is not None:
            return existing, False

        conversation = Conversation(
            id=str(uuid.uuid4()),
            bot_id=bot.id,
            user_id=user_id,
            user_name=user_name,
            user_email=user_email,
            status=ConversationStatus.ACTIVE,
        )
        self._db.add(conversation)
        try:
            await self._db.flush()
        except IntegrityError:
            # Lost the race on the active-pair unique index; use the winner's row.
            await self._db.rollback()
            await self._db.refresh(bot)
            winner = await self.find_active(bot.id, user_id)
            if winner is None:
                raise
            logger.info("conversation_create_raced", bot_id=bot.id, user_id=user_id, conversation_id=winner.id)
            return winner, False

        if bot.welcome_message:
            self._db.add(
                Message(
                    conversation_id=conversation.id,
                    role=MessageRole.ASSISTANT,
                    content=bot.welcome_message,
                )
            )
        await self._db.commit()
        logger.info("conversation_created", conversation_id=conversation.id, bot_id=bot.id, user_id=user_id)
        return conversation, True

    async def append_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        upstream_message_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Message:
        exists = await self._db.scalar(
            select(func.count()).select_from(Conversation).where(Conversation.id == conversation_id)
        )
        if not exists:
            raise NotFound("Conversation not found")

        message = Message(
            conversation_id=conversation_id,
            role=role,
            content=content,
            upstream_message_id=upstream_message_id,
            meta=metadata,
        )
        self._db.add(message)
        await self._db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(updated_at=utcnow())
        )
        await self._db.commit()
        return message

    async def record_upstream_handle(self, conversation_id: str, handle: Optional[str]) -> bool:
        """Attach the upstream conversation id unless one is already set."""
        if not handle:
            return False
        result = await self._db.execute(
            update(Conversation)
            .where(
                Conversation.id == conversation_id,
                Conversation.upstream_conversation_id.is_(None),
            )
            .values(upstream_conversation_id=handle)
        )
        await self._db.commit()
        recorded = result.rowcount == 1
        if recorded:
            logger.info("upstream_handle_recorded", conversation_id=conversation_id, handle=handle)
        return recorded

    async def close(self, conversation_id: str) -> Conversation:
        """Mark the conversation CLOSED. Closing a closed conversation is a no-op."""
        conversation = await self.get(conversation_id)
        if conversation.status != ConversationStatus.CLOSED:
            conversation.status = ConversationStatus.CLOSED
            await self._db.commit()
            logger.info("conversation_closed", conversation_id=conversation_id)
        return conversation

    async def list_messages(self, conversation_id: str, limit: int = 50, offset: int = 0) -> list[Message]:
        result = await self._db.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at, Message.id)
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())
