# botrelay/deps.py
from typing import AsyncIterator, Optional

from fastapi import Depends, Header, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from botrelay.core.api_keys import KeyGrant, extract_api_key, validate_api_key
from botrelay.core.chat import ChatService
from botrelay.core.upstream import UpstreamClient


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """
    Yields a database session for FastAPI dependencies.
    """
    async with request.app.state.session_factory() as db:
        yield db


def get_upstream(request: Request) -> UpstreamClient:
    return request.app.state.upstream


async def require_api_key(
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None),
    api_key: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
) -> KeyGrant:
    """
    Authenticates the caller by API key.

    Accepted, in priority order: `Authorization: Bearer ak_...`, `X-API-Key`,
    `?api_key=`.
    """
    token = extract_api_key(authorization, x_api_key, api_key)
    return await validate_api_key(db, token)


def get_chat_service(
    request: Request,
    db: AsyncSession = Depends(get_db),
    upstream: UpstreamClient = Depends(get_upstream),
) -> ChatService:
    return ChatService(db, upstream, session_factory=request.app.state.session_factory)
