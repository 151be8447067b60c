# botrelay/routers/proxy.py
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from botrelay.core.api_keys import KeyGrant
from botrelay.core.chat import CHAT_SCOPE, ChatService
from botrelay.core.types import ResponseMode
from botrelay.core.upstream import UpstreamClient, UpstreamConfig
from botrelay.deps import get_chat_service, get_upstream, require_api_key
from botrelay.routers.sse import event_stream_response
from botrelay.schemas.upstream import ChatMessagesRequest

router = APIRouter()


@router.post("/chat-messages")
async def chat_messages(
    payload: ChatMessagesRequest,
    request: Request,
    grant: KeyGrant = Depends(require_api_key),
    chat: ChatService = Depends(get_chat_service),
):
    """
    Provider-compatible chat endpoint, authenticated with this service's API key.

    - **response_mode = blocking**: returns the provider's JSON body.
    - **response_mode = streaming**: relays the provider's event stream.

    Nothing is stored in the local conversation tables.
    """
    body = payload.model_dump(exclude_none=True, mode="json")
    if payload.response_mode == ResponseMode.STREAMING:
        stream = await chat.proxy_stream(grant, body, is_disconnected=request.is_disconnected)
        return event_stream_response(stream)
    return JSONResponse(await chat.proxy_blocking(grant, body))


@router.get("/info")
async def get_info(
    grant: KeyGrant = Depends(require_api_key),
    upstream: UpstreamClient = Depends(get_upstream),
):
    grant.require_scope(CHAT_SCOPE)
    return await upstream.get_info(UpstreamConfig.for_bot(grant.bot))


@router.get("/parameters")
async def get_parameters(
    grant: KeyGrant = Depends(require_api_key),
    upstream: UpstreamClient = Depends(get_upstream),
):
    grant.require_scope(CHAT_SCOPE)
    return await upstream.get_parameters(UpstreamConfig.for_bot(grant.bot))


@router.get("/meta")
async def get_meta(
    grant: KeyGrant = Depends(require_api_key),
    upstream: UpstreamClient = Depends(get_upstream),
):
    grant.require_scope(CHAT_SCOPE)
    return await upstream.get_meta(UpstreamConfig.for_bot(grant.bot))
