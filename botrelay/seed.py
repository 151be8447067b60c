"""Create an owner, a bot and an API key so the relay can be used right away."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from botrelay.core.api_keys import issue_api_key
from botrelay.core.logging import get_logger
from botrelay.models.bot import Bot
from botrelay.models.user import User

logger = get_logger(__name__)


@dataclass
class SeedResult:
    user_id: str
    bot_id: str
    api_key_id: str
    api_key: str


async def get_or_create_owner(db: AsyncSession, email: str) -> User:
    owner = await db.scalar(select(User).where(User.email == email))
    if owner is None:
        owner = User(id=str(uuid.uuid4()), email=email, username=email.split("@")[0])
        db.add(owner)
        await db.commit()
        logger.info("owner_created", user_id=owner.id, email=email)
    return owner


async def seed(
    db: AsyncSession,
    owner_email: str,
    bot_name: str,
    upstream_api_key: str,
    upstream_base_url: str,
    welcome_message: Optional[str] = None,
    fallback_message: Optional[str] = None,
    key_name: str = "default",
) -> SeedResult:
    owner = await get_or_create_owner(db, owner_email)
    bot = Bot(
        id=str(uuid.uuid4()),
        name=bot_name,
        upstream_api_key=upstream_api_key,
        upstream_base_url=upstream_base_url,
        welcome_message=welcome_message,
        fallback_message=fallback_message,
        created_by=owner.id,
    )
    db.add(bot)
    await db.commit()
    logger.info("bot_created", bot_id=bot.id, name=bot_name)

    api_key, secret = await issue_api_key(db, bot.id, key_name)
    return SeedResult(user_id=owner.id, bot_id=bot.id, api_key_id=api_key.id, api_key=secret)
