"""Incremental decoder for the upstream provider's Server-Sent Events stream.

Only the event kinds the relay acts on get their own type; everything else
decodes to ``UnknownEvent`` and is ignored by consumers.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from botrelay.core.logging import get_logger

logger = get_logger(__name__)

ANSWER_EVENTS = frozenset({"message", "agent_message"})


@dataclass(frozen=True)
class MessageEvent:
    answer: str
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    created_at: Optional[int] = None


@dataclass(frozen=True)
class MessageEndEvent:
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    code: Optional[str] = None
    status: Optional[int] = None


@dataclass(frozen=True)
class UnknownEvent:
    name: str
    payload: dict[str, Any] = field(default_factory=dict)


SSEEvent = Union[MessageEvent, MessageEndEvent, ErrorEvent, UnknownEvent]


def decode_event(name: Optional[str], payload: dict[str, Any]) -> SSEEvent:
    """Map one JSON payload onto its event variant.

    The payload's own ``event`` field wins over the ``event:`` line, which is
    how the provider tags most of its events.
    """
    kind = payload.get("event") or name or "message"
    if kind in ANSWER_EVENTS:
        return MessageEvent(
            answer=str(payload.get("answer") or ""),
            conversation_id=payload.get("conversation_id"),
            message_id=payload.get("message_id") or payload.get("id"),
            created_at=payload.get("created_at"),
        )
    if kind == "message_end":
        metadata = payload.get("metadata")
        return MessageEndEvent(
            conversation_id=payload.get("conversation_id"),
            message_id=payload.get("message_id") or payload.get("id"),
            metadata=metadata if isinstance(metadata, dict) else {},
        )
    if kind == "error":
        return ErrorEvent(
            message=str(payload.get("message") or "Upstream stream error"),
            code=payload.get("code"),
            status=payload.get("status"),
        )
    return UnknownEvent(name=str(kind), payload=payload)


def format_event(payload: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def error_event(message: str) -> bytes:
    return format_event({"event": "error", "message": message})


class SSEDecoder:
    """Turns arbitrarily split byte chunks into events.

    Bytes are buffered until a full line arrives, so a line (or a multi-byte
    UTF-8 character) split across two chunks is decoded exactly once.
    """

    def __init__(self) -> None:
        self._buffer = b""
        self._event_name: Optional[str] = None
        self._data_lines: list[str] = []

    @property
    def pending(self) -> bool:
        """True while the bytes seen so far end inside a line or an event."""
        return bool(self._buffer or self._data_lines or self._event_name is not None)

    def feed(self, chunk: bytes) -> list[SSEEvent]:
        self._buffer += chunk
        events: list[SSEEvent] = []
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            raw_line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1:]
            event = self._process_line(raw_line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[SSEEvent]:
        """Decode whatever is left once the stream has ended."""
        events: list[SSEEvent] = []
        if self._buffer:
            raw_line, self._buffer = self._buffer, b""
            event = self._process_line(raw_line)
            if event is not None:
                events.append(event)
        event = self._dispatch()
        if event is not None:
            events.append(event)
        return events

    def _process_line(self, raw_line: bytes) -> Optional[SSEEvent]:
        line = raw_line.rstrip(b"\r").decode("utf-8", errors="replace")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        field_name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field_name == "data":
            self._data_lines.append(value)
        elif field_name == "event":
            self._event_name = value
        return None

    def _dispatch(self) -> Optional[SSEEvent]:
        name, data_lines = self._event_name, self._data_lines
        self._event_name, self._data_lines = None, []
        if not data_lines:
            return None

        data = "\n".join(data_lines)
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as exc:
            logger.warning("relay_malformed_event", event_name=name, error=str(exc), data=data[:200])
            return None
        if not isinstance(payload, dict):
            logger.warning("relay_malformed_event", event_name=name, error="payload is not an object", data=data[:200])
            return None
        return decode_event(name, payload)
