import json
from typing import Any, AsyncIterator, Optional

import httpx
import pytest

from botrelay.core.database import init_db, make_engine, make_session_factory
from botrelay.core.upstream import UpstreamClient
from botrelay.main import create_app
from botrelay.seed import seed

UPSTREAM_BASE_URL = "https://upstream.test/v1"


def sse(payload: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload)}\n\n".encode("utf-8")


async def chunks_of(*parts: bytes) -> AsyncIterator[bytes]:
    for part in parts:
        yield part


class FakeProvider:
    """Stands in for the upstream chat API behind an ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.status = 200
        self.error_message = "provider exploded"
        self.blocking_reply: dict[str, Any] = {
            "event": "message",
            "message_id": "m1",
            "conversation_id": "up1",
            "answer": "hi there",
            "created_at": 1700000000,
            "metadata": {"usage": {"total_tokens": 12}},
        }
        self.stream_chunks: list[bytes] = [
            sse({"event": "message", "answer": "hi ", "conversation_id": "up1", "message_id": "m1"}),
            sse({"event": "message", "answer": "there", "conversation_id": "up1", "message_id": "m1"}),
            sse({"event": "message_end", "conversation_id": "up1", "message_id": "m1", "metadata": {"usage": {}}}),
        ]
        self.stream_error: Optional[Exception] = None

    @property
    def last_body(self) -> dict[str, Any]:
        return json.loads(self.requests[-1].content)

    async def _stream(self) -> AsyncIterator[bytes]:
        for chunk in self.stream_chunks:
            yield chunk
        if self.stream_error is not None:
            raise self.stream_error

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status >= 400:
            return httpx.Response(self.status, json={"code": "bad_request", "message": self.error_message})

        path = request.url.path
        if path.endswith("/chat-messages"):
            body = json.loads(request.content)
            if body.get("response_mode") == "streaming":
                return httpx.Response(
                    200,
                    headers={"content-type": "text/event-stream"},
                    content=self._stream(),
                )
            return httpx.Response(200, json=self.blocking_reply)
        if path.endswith("/info"):
            return httpx.Response(200, json={"name": "Helper app", "mode": "chat"})
        if path.endswith("/parameters"):
            return httpx.Response(200, json={"opening_statement": "Hello"})
        if path.endswith("/meta"):
            return httpx.Response(200, json={"tool_icons": {}})
        return httpx.Response(404, json={"message": "not found"})


@pytest.fixture
async def engine(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'botrelay-test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
async def upstream(provider):
    client = UpstreamClient(httpx.AsyncClient(transport=httpx.MockTransport(provider.handle)))
    yield client
    await client.aclose()


@pytest.fixture
async def seeded(db):
    return await seed(
        db,
        owner_email="owner@example.com",
        bot_name="Helper",
        upstream_api_key="app-upstream-secret",
        upstream_base_url=UPSTREAM_BASE_URL,
    )


@pytest.fixture
async def client(session_factory, upstream):
    app = create_app(lifespan=None)
    app.state.session_factory = session_factory
    app.state.upstream = upstream
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


@pytest.fixture
def auth(seeded):
    return {"Authorization": f"Bearer {seeded.api_key}"}
