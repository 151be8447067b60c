# botrelay/models/bot.py
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import relationship

from botrelay.models.base import Base, utcnow


class Bot(Base):
    __tablename__ = "bots"

    id = Column(String, primary_key=True, index=True)  # UUID as string
    name = Column(String, nullable=False)
    description = Column(Text)
    avatar = Column(String)
    upstream_api_key = Column(String, nullable=False)
    upstream_base_url = Column(String, nullable=False)  # e.g. https://api.dify.ai/v1
    is_active = Column(Boolean, nullable=False, default=True)
    welcome_message = Column(Text)
    fallback_message = Column(Text)
    created_by = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    owner = relationship("User", back_populates="bots")
    api_keys = relationship("ApiKey", back_populates="bot", cascade="all, delete-orphan")
    conversations = relationship("Conversation", back_populates="bot", cascade="all, delete-orphan")
