"""Shared test fixtures for the chat relay backend."""

import os

# Settings are read at import time; configure the environment first.
os.environ.setdefault("BASIC_AUTH_SESSION_SECRET", "test-secret")
os.environ.setdefault("BASIC_AUTH_USERS", "alice:wonderland, bob:builder")
os.environ.setdefault("BURNCLOUD_API_KEY", "sk-test")
os.environ.setdefault("BURNCLOUD_BASE_URL", "https://upstream.test")
os.environ["OPENAI_API_KEY"] = ""

from collections.abc import AsyncGenerator, Callable, Generator  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from chatrelay.dependencies import get_http_client  # noqa: E402
from chatrelay.main import app  # noqa: E402

SSE_BODY = b"data: Hel\n\ndata: lo\n\ndata: [DONE]\n\n"


class FakeUpstream:
    """Stands in for an upstream provider; records every request it sees."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.handler: Callable[[httpx.Request], httpx.Response] = self.default_handler

    @staticmethod
    def default_handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, headers={"content-type": "text/event-stream"}, content=SSE_BODY
        )

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


@pytest.fixture
def upstream() -> Generator[FakeUpstream, None, None]:
    """Route the gateway's upstream calls to a ``FakeUpstream``."""
    fake = FakeUpstream()
    mock_client = httpx.AsyncClient(transport=httpx.MockTransport(fake))
    app.dependency_overrides[get_http_client] = lambda: mock_client
    yield fake
    app.dependency_overrides.pop(get_http_client, None)


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    """Authenticated async HTTP client for testing FastAPI endpoints."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport, base_url="http://test", auth=("alice", "wonderland")
    ) as ac:
        yield ac


@pytest_asyncio.fixture
async def anonymous_client() -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
