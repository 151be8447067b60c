# botrelay/models/conversation.py
from sqlalchemy import Column, DateTime, Enum, ForeignKey, Index, String, text
from sqlalchemy.orm import relationship

from botrelay.core.types import ConversationStatus
from botrelay.models.base import Base, utcnow


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        # At most one ACTIVE conversation per (bot, external user).
        Index(
            "uq_conversations_active_pair",
            "bot_id",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
    )

    id = Column(String, primary_key=True, index=True)  # UUID as string
    bot_id = Column(String, ForeignKey("bots.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False)  # caller supplied, not authenticated
    user_name = Column(String)
    user_email = Column(String)
    status = Column(
        Enum(ConversationStatus, name="conversation_status", native_enum=False),
        nullable=False,
        default=ConversationStatus.ACTIVE,
    )
    upstream_conversation_id = Column(String)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    bot = relationship("Bot", back_populates="conversations")
    messages = relationship("Message", back_populates="conversation", cascade="all, delete-orphan")
