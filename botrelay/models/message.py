# botrelay/models/message.py
from sqlalchemy import JSON, Column, DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from botrelay.core.types import MessageRole
from botrelay.models.base import Base, utcnow


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False, index=True)
    role = Column(Enum(MessageRole, name="message_role", native_enum=False), nullable=False)
    content = Column(Text, nullable=False)
    upstream_message_id = Column(String)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    # Relationship
    conversation = relationship("Conversation", back_populates="messages")
