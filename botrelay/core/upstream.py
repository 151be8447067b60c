"""HTTP client for the upstream chat provider (Dify-compatible API)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

import httpx

from botrelay.core.config import UPSTREAM_TIMEOUT
from botrelay.core.errors import UpstreamError
from botrelay.core.logging import get_logger
from botrelay.core.types import ResponseMode

logger = get_logger(__name__)


@dataclass(frozen=True)
class UpstreamConfig:
    """Where and as whom to reach the provider, taken from a bot."""

    api_key: str
    base_url: str

    @classmethod
    def for_bot(cls, bot) -> "UpstreamConfig":
        return cls(api_key=bot.upstream_api_key, base_url=bot.upstream_base_url)

    def url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }


@dataclass
class UpstreamReply:
    message_id: Optional[str]
    conversation_id: Optional[str]
    answer: str
    created_at: Optional[int] = None
    metadata: dict[str, Any] = field(default_factory=dict)


class UpstreamStream:
    """Lazy, single-pass iterator over the raw bytes of a streaming reply."""

    def __init__(self, response: httpx.Response):
        self._response = response
        self._iterator: Optional[AsyncIterator[bytes]] = None

    @property
    def status_code(self) -> int:
        return self._response.status_code

    def __aiter__(self) -> AsyncIterator[bytes]:
        if self._iterator is not None:
            raise RuntimeError("Upstream stream can only be iterated once")
        self._iterator = self._iterate()
        return self._iterator

    async def _iterate(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                yield chunk
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Upstream stream failed: {exc}") from exc
        finally:
            await self._response.aclose()

    async def aclose(self) -> None:
        if self._iterator is not None:
            await self._iterator.aclose()
        await self._response.aclose()


def build_chat_payload(
    query: str,
    user: str,
    response_mode: ResponseMode,
    conversation_id: Optional[str] = None,
    files: Optional[list[Any]] = None,
    inputs: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "inputs": inputs or {},
        "query": query,
        "response_mode": str(response_mode),
        "user": user,
    }
    if conversation_id:
        payload["conversation_id"] = conversation_id
    if files:
        payload["files"] = files
    return payload


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    text = response.text.strip()
    return text[:500] if text else f"HTTP {response.status_code}"


class UpstreamClient:
    """Talks to the provider over one shared ``httpx.AsyncClient``.

    Built once at startup and handed to request handlers; the provider's
    credentials travel per call in an ``UpstreamConfig``.
    """

    def __init__(self, http: Optional[httpx.AsyncClient] = None, timeout: float = UPSTREAM_TIMEOUT):
        self._http = http or httpx.AsyncClient()
        self._timeout = timeout

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request_json(self, method: str, config: UpstreamConfig, path: str, **kwargs) -> Any:
        try:
            response = await self._http.request(
                method,
                config.url(path),
                headers=config.headers,
                timeout=self._timeout,
                **kwargs,
            )
        except httpx.HTTPError as exc:
            logger.error("upstream_unreachable", path=path, error=str(exc))
            raise UpstreamError(f"Upstream call failed: {exc}") from exc

        if response.is_error:
            message = _error_message(response)
            logger.error("upstream_error", path=path, status=response.status_code, error=message)
            raise UpstreamError(f"Upstream call failed: {message}", response.status_code)

        try:
            return response.json()
        except ValueError as exc:
            logger.error("upstream_malformed_response", path=path, status=response.status_code)
            raise UpstreamError("Upstream returned a malformed response") from exc

    async def send_chat(self, config: UpstreamConfig, payload: dict[str, Any]) -> dict[str, Any]:
        """POST ``chat-messages`` in blocking mode and return the raw JSON body."""
        body = dict(payload, response_mode=str(ResponseMode.BLOCKING))
        data = await self._request_json("POST", config, "/chat-messages", json=body)
        if not isinstance(data, dict):
            raise UpstreamError("Upstream returned a malformed response")
        return data

    async def chat_blocking(
        self,
        config: UpstreamConfig,
        query: str,
        user: str,
        conversation_id: Optional[str] = None,
        files: Optional[list[Any]] = None,
        inputs: Optional[dict[str, Any]] = None,
    ) -> UpstreamReply:
        payload = build_chat_payload(query, user, ResponseMode.BLOCKING, conversation_id, files, inputs)
        data = await self.send_chat(config, payload)
        metadata = data.get("metadata")
        return UpstreamReply(
            message_id=data.get("message_id") or data.get("id"),
            conversation_id=data.get("conversation_id"),
            answer=str(data.get("answer") or ""),
            created_at=data.get("created_at"),
            metadata=metadata if isinstance(metadata, dict) else {},
        )

    async def open_stream(self, config: UpstreamConfig, payload: dict[str, Any]) -> UpstreamStream:
        """POST ``chat-messages`` in streaming mode and hand back the live body.

        No timeout applies; the stream lasts until the provider ends it.
        """
        body = dict(payload, response_mode=str(ResponseMode.STREAMING))
        request = self._http.build_request(
            "POST",
            config.url("/chat-messages"),
            headers=config.headers,
            json=body,
            timeout=httpx.Timeout(None),
        )
        try:
            response = await self._http.send(request, stream=True)
        except httpx.HTTPError as exc:
            logger.error("upstream_unreachable", path="/chat-messages", error=str(exc))
            raise UpstreamError(f"Upstream call failed: {exc}") from exc

        if response.is_error:
            try:
                await response.aread()
                message = _error_message(response)
            except httpx.HTTPError as exc:
                message = str(exc)
            finally:
                await response.aclose()
            logger.error("upstream_error", path="/chat-messages", status=response.status_code, error=message)
            raise UpstreamError(f"Upstream call failed: {message}", response.status_code)

        logger.debug("upstream_stream_opened", status=response.status_code)
        return UpstreamStream(response)

    async def get_info(self, config: UpstreamConfig) -> Any:
        return await self._request_json("GET", config, "/info")

    async def get_parameters(self, config: UpstreamConfig) -> Any:
        return await self._request_json("GET", config, "/parameters")

    async def get_meta(self, config: UpstreamConfig) -> Any:
        return await self._request_json("GET", config, "/meta")
