"""Pass-through relay from an upstream SSE byte stream to a downstream response."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from botrelay.core.errors import UpstreamError
from botrelay.core.logging import get_logger
from botrelay.core.sse import (
    ErrorEvent,
    MessageEndEvent,
    MessageEvent,
    SSEDecoder,
    SSEEvent,
    error_event,
)

logger = get_logger(__name__)


class RelayState(StrEnum):
    OPEN = "open"
    ERRORED = "errored"
    CLOSED = "closed"


@dataclass
class StreamTranscript:
    """What the relay learned from the events it forwarded."""

    answer_parts: list[str] = field(default_factory=list)
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    created_at: Optional[int] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    event_count: int = 0

    @property
    def answer(self) -> str:
        return "".join(self.answer_parts)

    def apply(self, event: SSEEvent) -> None:
        self.event_count += 1
        if isinstance(event, MessageEvent):
            self.answer_parts.append(event.answer)
            self._remember_ids(event.conversation_id, event.message_id)
            if self.created_at is None:
                self.created_at = event.created_at
        elif isinstance(event, MessageEndEvent):
            self._remember_ids(event.conversation_id, event.message_id)
            self.metadata = event.metadata
        elif isinstance(event, ErrorEvent):
            self.error = event.message

    def _remember_ids(self, conversation_id: Optional[str], message_id: Optional[str]) -> None:
        # First seen wins.
        if self.conversation_id is None and conversation_id:
            self.conversation_id = conversation_id
        if self.message_id is None and message_id:
            self.message_id = message_id


CompletionHook = Callable[[StreamTranscript], Awaitable[None]]
DisconnectProbe = Callable[[], Awaitable[bool]]


class StreamRelay:
    """Forward upstream chunks verbatim while decoding them on the side.

    ``stream()`` is an async generator meant to back a streaming HTTP
    response. Every upstream chunk is yielded unchanged and in order. The
    same bytes are fed to an ``SSEDecoder`` so the final answer can be
    persisted by ``on_complete`` once the upstream ends cleanly.

    If the upstream fails mid-stream, one ``error`` event is yielded and the
    stream ends. If the downstream goes away (``is_disconnected`` reports it,
    or the generator is closed or cancelled) no further upstream chunk is
    read. A relay is single use.
    """

    def __init__(
        self,
        on_complete: Optional[CompletionHook] = None,
        is_disconnected: Optional[DisconnectProbe] = None,
    ):
        self._on_complete = on_complete
        self._is_disconnected = is_disconnected
        self._decoder = SSEDecoder()
        self.transcript = StreamTranscript()
        self.state = RelayState.OPEN
        self.bytes_forwarded = 0
        self.disconnected = False

    async def stream(self, source: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        clean = False
        try:
            async for chunk in source:
                if self._is_disconnected is not None and await self._is_disconnected():
                    self.disconnected = True
                    logger.info("relay_downstream_disconnected", bytes_forwarded=self.bytes_forwarded)
                    return
                if not chunk:
                    continue
                self._absorb(self._decoder.feed(chunk))
                self.bytes_forwarded += len(chunk)
                yield chunk
            self._absorb(self._decoder.flush())
            clean = True
        except UpstreamError as exc:
            logger.error("relay_upstream_error", error=exc.message, bytes_forwarded=self.bytes_forwarded)
            yield self._terminal_error(exc.message)
        except Exception:
            logger.exception("relay_source_failed", bytes_forwarded=self.bytes_forwarded)
            yield self._terminal_error("Upstream stream failed")
        except (asyncio.CancelledError, GeneratorExit):
            self.disconnected = True
            logger.info("relay_downstream_disconnected", bytes_forwarded=self.bytes_forwarded)
            raise
        finally:
            self.state = RelayState.CLOSED
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()

        if clean:
            logger.info(
                "relay_completed",
                bytes_forwarded=self.bytes_forwarded,
                events=self.transcript.event_count,
                answer_length=len(self.transcript.answer),
            )
            if self._on_complete is not None:
                await self._on_complete(self.transcript)

    def _terminal_error(self, message: str) -> bytes:
        self.state = RelayState.ERRORED
        self.transcript.error = message
        # Terminate a half-forwarded line or event so the error stands alone.
        prefix = b"\n\n" if self._decoder.pending else b""
        return prefix + error_event(message)

    def _absorb(self, events: list[SSEEvent]) -> None:
        for event in events:
            self.transcript.apply(event)


async def single_error_stream(message: str) -> AsyncIterator[bytes]:
    """A stream made of one terminal ``error`` event."""
    yield error_event(message)
