# botrelay/core/database.py
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from botrelay.core.config import DATABASE_URL
from botrelay.models.base import Base

# Model modules register their tables on Base.metadata when imported.
from botrelay.models import api_key, bot, conversation, message, user  # noqa: F401


def make_engine(url: str = DATABASE_URL) -> AsyncEngine:
    return create_async_engine(url)


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind=bind, autoflush=False, expire_on_commit=False)


engine = make_engine()
SessionLocal = make_session_factory(engine)


async def init_db(bind: AsyncEngine = engine) -> None:
    """Create any missing tables."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
