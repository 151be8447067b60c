"""API key issuance and validation.

Keys look like ``ak_<64 hex chars>``. Callers may present them as a bearer
token, an ``X-API-Key`` header or an ``api_key`` query parameter, checked in
that order.
"""

from __future__ import annotations

import re
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from botrelay.core.config import API_KEY_PREFIX, DEFAULT_API_KEY_PERMISSIONS, DEFAULT_RATE_LIMIT
from botrelay.core.errors import Forbidden, NotFound, Unauthorized
from botrelay.core.logging import get_logger
from botrelay.models.api_key import ApiKey
from botrelay.models.base import utcnow
from botrelay.models.bot import Bot

logger = get_logger(__name__)

_SCOPE_SEPARATORS = re.compile(r"[,+\s]+")


@dataclass
class KeyGrant:
    """What a validated key allows: its scopes and the bot it is bound to."""

    api_key_id: str
    name: str
    permissions: str
    rate_limit: int
    bot: Bot
    scopes: frozenset[str] = field(init=False)

    def __post_init__(self) -> None:
        self.scopes = frozenset(s for s in _SCOPE_SEPARATORS.split(self.permissions or "") if s)

    def require_scope(self, scope: str) -> None:
        if scope not in self.scopes:
            raise Forbidden(f"API key lacks the '{scope}' permission")


def generate_api_key() -> tuple[str, str]:
    """Return a fresh secret and its display prefix."""
    key = f"{API_KEY_PREFIX}{secrets.token_hex(32)}"
    key_prefix = f"{key[:7]}...{key[-4:]}"
    return key, key_prefix


def extract_api_key(
    authorization: str | None,
    x_api_key: str | None,
    query_key: str | None,
) -> str | None:
    """Pick the credential from the first location that carries one."""
    if authorization and authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):].strip()
        if token.startswith(API_KEY_PREFIX):
            return token
    if x_api_key:
        return x_api_key
    if query_key:
        return query_key
    return None


async def issue_api_key(
    db: AsyncSession,
    bot_id: str,
    name: str,
    permissions: str = DEFAULT_API_KEY_PERMISSIONS,
    rate_limit: int = DEFAULT_RATE_LIMIT,
    expires_at: datetime | None = None,
) -> tuple[ApiKey, str]:
    """Create a key for ``bot_id``. The secret is returned only here."""
    bot = await db.get(Bot, bot_id)
    if bot is None:
        raise NotFound("Bot not found")

    key, key_prefix = generate_api_key()
    api_key = ApiKey(
        id=str(uuid.uuid4()),
        key=key,
        key_prefix=key_prefix,
        name=name,
        bot_id=bot_id,
        permissions=permissions,
        rate_limit=rate_limit,
        expires_at=expires_at,
    )
    db.add(api_key)
    await db.commit()
    logger.info("api_key_issued", api_key_id=api_key.id, bot_id=bot_id, key_prefix=key_prefix)
    return api_key, key


async def validate_api_key(db: AsyncSession, token: str | None) -> KeyGrant:
    """Check ``token`` and record one use of it.

    The usage counter is bumped with a single ``UPDATE ... SET usage_count =
    usage_count + 1`` so concurrent validations of the same key never lose
    an increment.
    """
    if not token:
        raise Unauthorized("Missing API key")

    result = await db.execute(
        select(ApiKey, Bot).join(Bot, ApiKey.bot_id == Bot.id).where(ApiKey.key == token)
    )
    row = result.first()
    if row is None:
        logger.warning("api_key_rejected", reason="unknown")
        raise Unauthorized("Invalid API key")

    api_key, bot = row
    if not api_key.is_active:
        logger.warning("api_key_rejected", reason="disabled", api_key_id=api_key.id)
        raise Unauthorized("API key is disabled")
    if not bot.is_active:
        logger.warning("api_key_rejected", reason="bot_inactive", api_key_id=api_key.id, bot_id=bot.id)
        raise Unauthorized("The bot bound to this API key is disabled")

    now = utcnow()
    if api_key.expires_at is not None and now > api_key.expires_at:
        logger.warning("api_key_rejected", reason="expired", api_key_id=api_key.id)
        raise Unauthorized("API key has expired")

    await db.execute(
        update(ApiKey)
        .where(ApiKey.id == api_key.id)
        .values(usage_count=ApiKey.usage_count + 1, last_used_at=now)
    )
    await db.commit()

    return KeyGrant(
        api_key_id=api_key.id,
        name=api_key.name,
        permissions=api_key.permissions,
        rate_limit=api_key.rate_limit,
        bot=bot,
    )
