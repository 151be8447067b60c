# botrelay/models/user.py
from sqlalchemy import Column, DateTime, String
from sqlalchemy.orm import relationship

from botrelay.models.base import Base, utcnow


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, index=True)  # UUID as string
    email = Column(String, unique=True, nullable=False)
    username = Column(String, unique=True, nullable=False)
    name = Column(String)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    # Relationships
    bots = relationship("Bot", back_populates="owner", cascade="all, delete-orphan")
