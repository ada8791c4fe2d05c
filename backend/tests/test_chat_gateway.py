"""Tests for the streaming chat gateway."""

import asyncio
import base64
import json
from collections.abc import AsyncIterator
from typing import Any, Optional

import httpx
import pytest
from httpx import AsyncClient

from chatrelay.gateway import UPSTREAM_AUTH_FAILED, build_payload
from chatrelay.main import app

from conftest import SSE_BODY, FakeUpstream


def chat_body(**overrides: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "messages": [{"role": "user", "content": "hello"}],
        "model": "gpt-4o",
        "provider": "burncloud",
    }
    body.update(overrides)
    return body


async def post_chat(client: AsyncClient, body: Any) -> httpx.Response:
    return await client.post("/api/chat", json=body)


def error_message(response: httpx.Response) -> str:
    return response.json()["error"]["message"]


@pytest.mark.asyncio
async def test_relays_upstream_stream(client: AsyncClient, upstream: FakeUpstream) -> None:
    response = await post_chat(client, chat_body())

    assert response.status_code == 200
    assert response.content == SSE_BODY
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["x-accel-buffering"] == "no"

    sent = upstream.last
    assert str(sent.url) == "https://upstream.test/v1/chat/completions"
    assert sent.headers["authorization"] == "Bearer sk-test"
    assert json.loads(sent.content) == {
        "model": "gpt-4o",
        "messages": [{"role": "user", "content": "hello"}],
        "stream": True,
    }


@pytest.mark.asyncio
async def test_system_prompt_goes_before_history(
    client: AsyncClient, upstream: FakeUpstream
) -> None:
    history = [
        {"role": "system", "content": "in-history rule"},
        {"role": "user", "content": "hi"},
    ]
    body = chat_body(messages=history, systemPrompt="  be brief  ", options={"stream": False})

    response = await post_chat(client, body)

    assert response.status_code == 200
    sent = json.loads(upstream.last.content)
    assert sent["messages"] == [{"role": "system", "content": "be brief"}, *history]
    assert sent["stream"] is False


@pytest.mark.asyncio
async def test_blank_system_prompt_is_omitted(client: AsyncClient, upstream: FakeUpstream) -> None:
    await post_chat(client, chat_body(systemPrompt="   "))
    assert json.loads(upstream.last.content)["messages"] == [{"role": "user", "content": "hello"}]


@pytest.mark.asyncio
async def test_rejects_non_json_body(client: AsyncClient, upstream: FakeUpstream) -> None:
    response = await client.post(
        "/api/chat", content=b"not json", headers={"content-type": "application/json"}
    )
    assert response.status_code == 400
    assert error_message(response) == "Request body must be JSON"
    assert upstream.requests == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"messages": []}, "messages"),
        ({"messages": [{"role": "robot", "content": "x"}]}, "messages"),
        ({"messages": [{"role": "user", "content": 42}]}, "messages"),
        ({"model": 4}, "model"),
        ({"provider": None}, "provider"),
        ({"attachments": [{"type": "audio"}]}, "attachments"),
        ({"attachments": [{"type": "image", "size": "big"}]}, "attachments"),
        ({"attachments": [{"type": "image", "mime": 7}]}, "attachments"),
    ],
)
async def test_validation_failures_name_the_field(
    client: AsyncClient, upstream: FakeUpstream, overrides: dict[str, Any], field: str
) -> None:
    response = await post_chat(client, chat_body(**overrides))

    assert response.status_code == 400
    assert field in error_message(response)
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_unknown_provider_is_rejected(client: AsyncClient, upstream: FakeUpstream) -> None:
    response = await post_chat(client, chat_body(provider="nope"))
    assert response.status_code == 400
    assert "provider" in error_message(response)


@pytest.mark.asyncio
async def test_provider_without_secret_is_rejected(
    client: AsyncClient, upstream: FakeUpstream
) -> None:
    response = await post_chat(client, chat_body(provider="openai"))
    assert response.status_code == 400
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_override_secret_allows_provider_without_secret(
    client: AsyncClient, upstream: FakeUpstream
) -> None:
    body = chat_body(
        provider="openai",
        providerConfig={"apiKey": "sk-caller", "baseUrl": "https://gateway.example"},
    )

    response = await post_chat(client, body)

    assert response.status_code == 200
    assert upstream.last.headers["authorization"] == "Bearer sk-caller"
    assert str(upstream.last.url) == "https://gateway.example/v1/chat/completions"


@pytest.mark.asyncio
async def test_model_outside_allow_list_is_rejected(
    client: AsyncClient, upstream: FakeUpstream
) -> None:
    response = await post_chat(client, chat_body(model="llama-3"))
    assert response.status_code == 400
    assert "model" in error_message(response)
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_override_model_list_wins(client: AsyncClient, upstream: FakeUpstream) -> None:
    body = chat_body(model="llama-3", providerConfig={"models": ["llama-3"]})
    response = await post_chat(client, body)
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_image_attachments_are_forwarded(client: AsyncClient, upstream: FakeUpstream) -> None:
    attachments = [{"type": "image", "url": "data:image/png;base64,AA==", "size": 1}]
    response = await post_chat(client, chat_body(attachments=attachments))

    assert response.status_code == 200
    assert json.loads(upstream.last.content)["attachments"] == attachments


@pytest.mark.asyncio
async def test_video_attachments_are_forwarded(
    client: AsyncClient, upstream: FakeUpstream
) -> None:
    attachments = [{"type": "video", "url": "data:video/mp4;base64,AA", "mime": "video/mp4"}]

    response = await post_chat(client, chat_body(attachments=attachments))

    assert response.status_code == 200
    assert response.content == SSE_BODY
    assert json.loads(upstream.last.content)["attachments"] == attachments


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 403])
async def test_upstream_auth_errors_are_masked(
    client: AsyncClient, upstream: FakeUpstream, status: int
) -> None:
    upstream.handler = lambda request: httpx.Response(
        status, json={"error": "invalid key sk-test for account 123"}
    )

    response = await post_chat(client, chat_body())

    assert response.status_code == status
    assert error_message(response) == UPSTREAM_AUTH_FAILED
    assert "sk-test" not in response.text


@pytest.mark.asyncio
async def test_upstream_error_body_is_relayed(client: AsyncClient, upstream: FakeUpstream) -> None:
    upstream.handler = lambda request: httpx.Response(429, text="rate limited")

    response = await post_chat(client, chat_body())

    assert response.status_code == 429
    assert error_message(response) == "rate limited"


@pytest.mark.asyncio
async def test_unreachable_upstream_is_502(client: AsyncClient, upstream: FakeUpstream) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    upstream.handler = refuse

    response = await post_chat(client, chat_body())

    assert response.status_code == 502
    assert len(upstream.requests) == 1


@pytest.mark.asyncio
async def test_hung_upstream_is_504(client: AsyncClient, upstream: FakeUpstream) -> None:
    def hang(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    upstream.handler = hang

    response = await post_chat(client, chat_body())

    assert response.status_code == 504


@pytest.mark.asyncio
async def test_mid_stream_failure_becomes_error_event(
    client: AsyncClient, upstream: FakeUpstream
) -> None:
    async def broken_body():
        yield b"data: partial\n\n"
        raise httpx.ReadError("connection reset")

    upstream.handler = lambda request: httpx.Response(
        200, headers={"content-type": "text/event-stream"}, content=broken_body()
    )

    response = await post_chat(client, chat_body())

    assert response.status_code == 200
    assert response.text.startswith("data: partial\n\n")
    assert "event: error\ndata: ReadError: connection reset\n\n" in response.text


@pytest.mark.asyncio
async def test_chat_requires_authentication(
    anonymous_client: AsyncClient, upstream: FakeUpstream
) -> None:
    response = await anonymous_client.post("/api/chat", json=chat_body())
    assert response.status_code == 401
    assert upstream.requests == []


def test_build_payload_keeps_history_order() -> None:
    history = [
        {"role": "user", "content": "a"},
        {"role": "assistant", "content": "b"},
        {"role": "user", "content": "c"},
    ]
    payload = build_payload("m", history, system_prompt="sys")
    assert [m["content"] for m in payload["messages"]] == ["sys", "a", "b", "c"]
    assert "attachments" not in payload


class TrackedStream(httpx.AsyncByteStream):
    """Upstream body that records whether the relay closed it."""

    def __init__(
        self,
        chunks: list[bytes],
        error: Optional[Exception] = None,
        hold: Optional[asyncio.Event] = None,
    ) -> None:
        self.chunks = chunks
        self.error = error
        self.hold = hold
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self.chunks:
            yield chunk
        if self.hold is not None:
            await self.hold.wait()
        if self.error is not None:
            raise self.error

    async def aclose(self) -> None:
        self.closed = True


def serve(upstream: FakeUpstream, stream: TrackedStream, status: int = 200) -> None:
    upstream.handler = lambda request: httpx.Response(
        status, headers={"content-type": "text/event-stream"}, stream=stream
    )


@pytest.mark.asyncio
async def test_upstream_is_closed_after_completion(
    client: AsyncClient, upstream: FakeUpstream
) -> None:
    stream = TrackedStream([b"data: Hel\n\n", b"data: lo\n\n", b"data: [DONE]\n\n"])
    serve(upstream, stream)

    response = await post_chat(client, chat_body())

    assert response.content == SSE_BODY
    assert stream.closed


@pytest.mark.asyncio
async def test_upstream_is_closed_after_mid_stream_failure(
    client: AsyncClient, upstream: FakeUpstream
) -> None:
    stream = TrackedStream([b"data: partial\n\n"], error=httpx.ReadError("connection reset"))
    serve(upstream, stream)

    response = await post_chat(client, chat_body())

    assert "event: error" in response.text
    assert stream.closed


@pytest.mark.asyncio
async def test_upstream_is_closed_after_error_status(
    client: AsyncClient, upstream: FakeUpstream
) -> None:
    stream = TrackedStream([b"overloaded"])
    serve(upstream, stream, status=503)

    response = await post_chat(client, chat_body())

    assert response.status_code == 503
    assert error_message(response) == "overloaded"
    assert stream.closed


@pytest.mark.asyncio
async def test_client_disconnect_releases_upstream(upstream: FakeUpstream) -> None:
    """The first chunk reaches the client while upstream is still open; leaving closes it."""
    held = asyncio.Event()
    stream = TrackedStream([b"data: A\n\n"], hold=held)
    serve(upstream, stream)

    body = json.dumps(chat_body()).encode("utf-8")
    credentials = base64.b64encode(b"alice:wonderland")
    first_chunk = asyncio.Event()
    chunks: list[bytes] = []
    request_sent = False

    async def receive() -> dict[str, Any]:
        nonlocal request_sent
        if not request_sent:
            request_sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        await first_chunk.wait()
        return {"type": "http.disconnect"}

    async def send(message: dict[str, Any]) -> None:
        if message["type"] == "http.response.body" and message.get("body"):
            chunks.append(message["body"])
            first_chunk.set()

    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/api/chat",
        "raw_path": b"/api/chat",
        "root_path": "",
        "query_string": b"",
        "headers": [
            (b"host", b"test"),
            (b"content-type", b"application/json"),
            (b"content-length", str(len(body)).encode("ascii")),
            (b"authorization", b"Basic " + credentials),
        ],
        "client": ("127.0.0.1", 50000),
        "server": ("test", 80),
    }

    await asyncio.wait_for(app(scope, receive, send), timeout=5)

    assert chunks[0] == b"data: A\n\n"
    assert not held.is_set()
    assert stream.closed
