# botrelay/models/api_key.py
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from botrelay.models.base import Base, utcnow


class ApiKey(Base):
    __tablename__ = "api_keys"

    id = Column(String, primary_key=True, index=True)  # UUID as string
    key = Column(String, unique=True, nullable=False, index=True)
    key_prefix = Column(String, nullable=False)  # ak_1234...abcd, safe to display
    name = Column(String, nullable=False)
    bot_id = Column(String, ForeignKey("bots.id"), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    permissions = Column(String, nullable=False, default="chat")
    rate_limit = Column(Integer, nullable=False, default=100)
    expires_at = Column(DateTime)
    usage_count = Column(Integer, nullable=False, default=0)
    last_used_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    # Relationship
    bot = relationship("Bot", back_populates="api_keys")
