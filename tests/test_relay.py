import pytest

from botrelay.core.errors import UpstreamError
from botrelay.core.relay import RelayState, StreamRelay, single_error_stream
from botrelay.core.sse import ErrorEvent, MessageEvent, SSEDecoder

from conftest import chunks_of, sse


class TrackedSource:
    """An upstream byte source that records how far it was read."""

    def __init__(self, parts, error=None):
        self.parts = list(parts)
        self.error = error
        self.reads = 0
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.reads < len(self.parts):
            part = self.parts[self.reads]
            self.reads += 1
            return part
        if self.error is not None:
            error, self.error = self.error, None
            raise error
        raise StopAsyncIteration

    async def aclose(self):
        self.closed = True


async def collect(stream):
    return [chunk async for chunk in stream]


PARTS = [
    sse({"event": "message", "answer": "Hel", "conversation_id": "up9", "message_id": "m9"})[:30],
    sse({"event": "message", "answer": "Hel", "conversation_id": "up9", "message_id": "m9"})[30:],
    sse({"event": "message", "answer": "lo", "conversation_id": "up9", "message_id": "m9"}),
    sse({"event": "message_end", "conversation_id": "up9", "message_id": "m9", "metadata": {"usage": {"total_tokens": 3}}}),
]


async def test_chunks_are_forwarded_verbatim_and_in_order():
    relay = StreamRelay()

    forwarded = await collect(relay.stream(chunks_of(*PARTS)))

    assert forwarded == PARTS
    assert relay.bytes_forwarded == sum(len(p) for p in PARTS)
    assert relay.state == RelayState.CLOSED


async def test_transcript_matches_what_the_client_would_decode():
    relay = StreamRelay()
    forwarded = await collect(relay.stream(chunks_of(*PARTS)))

    client_side = SSEDecoder()
    client_events = client_side.feed(b"".join(forwarded)) + client_side.flush()
    client_answer = "".join(getattr(e, "answer", "") for e in client_events)

    assert relay.transcript.answer == client_answer == "Hello"
    assert relay.transcript.conversation_id == "up9"
    assert relay.transcript.metadata == {"usage": {"total_tokens": 3}}


async def test_on_complete_runs_once_after_clean_end():
    seen = []

    async def on_complete(transcript):
        seen.append(transcript.answer)

    relay = StreamRelay(on_complete=on_complete)
    await collect(relay.stream(chunks_of(*PARTS)))

    assert seen == ["Hello"]


async def test_upstream_failure_yields_one_terminal_error_event():
    seen = []

    async def on_complete(transcript):
        seen.append(transcript)

    source = TrackedSource(PARTS[:2], error=UpstreamError("connection reset"))
    relay = StreamRelay(on_complete=on_complete)

    forwarded = await collect(relay.stream(source))

    assert forwarded[:2] == PARTS[:2]
    assert len(forwarded) == 3
    assert SSEDecoder().feed(forwarded[-1]) == [ErrorEvent(message="connection reset")]
    assert relay.transcript.error == "connection reset"
    assert relay.state == RelayState.CLOSED
    assert source.closed
    assert seen == []


async def test_disconnect_probe_stops_reading_upstream():
    calls = {"n": 0}

    async def is_disconnected():
        calls["n"] += 1
        return calls["n"] > 1

    seen = []

    async def on_complete(transcript):
        seen.append(transcript)

    source = TrackedSource(PARTS)
    relay = StreamRelay(on_complete=on_complete, is_disconnected=is_disconnected)

    forwarded = await collect(relay.stream(source))

    assert forwarded == PARTS[:1]
    assert source.reads == 2
    assert source.closed
    assert relay.disconnected
    assert seen == []


async def test_closing_the_generator_closes_the_source():
    source = TrackedSource(PARTS)
    relay = StreamRelay()
    stream = relay.stream(source)

    first = await stream.__anext__()
    await stream.aclose()

    assert first == PARTS[0]
    assert source.reads == 1
    assert source.closed
    assert relay.disconnected
    assert relay.state == RelayState.CLOSED


async def test_empty_chunks_are_not_forwarded():
    relay = StreamRelay()

    forwarded = await collect(relay.stream(chunks_of(b"", PARTS[2], b"")))

    assert forwarded == [PARTS[2]]


async def test_relay_state_starts_open():
    relay = StreamRelay()

    assert relay.state == RelayState.OPEN
    assert relay.transcript.answer == ""


@pytest.mark.parametrize("message", ["Upstream call failed: quota", "boom"])
async def test_single_error_stream(message):
    chunks = await collect(single_error_stream(message))

    assert len(chunks) == 1
    assert SSEDecoder().feed(chunks[0]) == [ErrorEvent(message=message)]


async def test_malformed_event_between_good_events_is_skipped():
    parts = [
        sse({"event": "message", "answer": "Hel", "conversation_id": "up9"}),
        b"data: {not json\n\n",
        sse({"event": "message", "answer": "lo", "conversation_id": "up9"}),
    ]
    seen = []

    async def on_complete(transcript):
        seen.append(transcript.answer)

    relay = StreamRelay(on_complete=on_complete)
    forwarded = await collect(relay.stream(chunks_of(*parts)))

    assert forwarded == parts
    assert seen == ["Hello"]
    assert relay.transcript.error is None


async def test_failure_mid_line_still_delivers_a_standalone_error_event():
    partial = PARTS[0]
    source = TrackedSource([partial], error=UpstreamError("connection reset"))
    relay = StreamRelay()

    forwarded = await collect(relay.stream(source))

    assert forwarded[0] == partial
    client_side = SSEDecoder()
    events = client_side.feed(b"".join(forwarded)) + client_side.flush()
    assert events == [ErrorEvent(message="connection reset")]


async def test_failure_after_data_line_without_blank_line():
    line = b'data: {"event": "message", "answer": "Hi"}\n'
    source = TrackedSource([line], error=UpstreamError("connection reset"))
    relay = StreamRelay()

    forwarded = await collect(relay.stream(source))

    events = SSEDecoder().feed(b"".join(forwarded))
    assert events == [MessageEvent(answer="Hi"), ErrorEvent(message="connection reset")]


async def test_unexpected_source_failure_becomes_error_event():
    seen = []

    async def on_complete(transcript):
        seen.append(transcript)

    source = TrackedSource(PARTS[:1], error=RuntimeError("stream consumed"))
    relay = StreamRelay(on_complete=on_complete)

    forwarded = await collect(relay.stream(source))

    assert forwarded[0] == PARTS[0]
    assert SSEDecoder().feed(forwarded[-1]) == [ErrorEvent(message="Upstream stream failed")]
    assert relay.transcript.error == "Upstream stream failed"
    assert relay.state == RelayState.CLOSED
    assert source.closed
    assert seen == []
