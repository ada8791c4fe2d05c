"""Chat request gateway: validate, assemble, forward and relay.

The gateway is the only component that talks to upstream providers. A request
goes through three steps:

1. ``prepare`` validates the inbound body, resolves the provider and builds
   the outbound payload. Every validation failure is a distinct 400.
2. ``forward`` sends the payload upstream and returns the open, streaming
   upstream response, or raises ``ApiError`` for transport failures and
   non-2xx statuses (401/403 bodies are masked).
3. ``relay_stream`` yields the upstream bytes as they arrive. A read failure
   mid-stream becomes one synthetic ``event: error`` frame; the upstream
   response is closed on every exit path.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx
from pydantic import TypeAdapter, ValidationError

from chatrelay.errors import ApiError
from chatrelay.models.chat import AttachmentMeta, ChatTurn
from chatrelay.providers import ProviderOverride, ProviderResolver, ResolvedProvider

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "text/event-stream"
UPSTREAM_AUTH_FAILED = "Upstream authentication failed, check the API key"

_turns_adapter = TypeAdapter(list[ChatTurn])
_attachments_adapter = TypeAdapter(list[AttachmentMeta])


@dataclass
class UpstreamRequest:
    """A validated request, ready to be sent to the resolved provider."""

    provider: ResolvedProvider
    model: str
    payload: dict[str, Any]

    @property
    def headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", **self.provider.headers}


def parse_body(raw: bytes) -> Any:
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ApiError(400, "Request body must be JSON") from exc


def _validate_messages(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list) or not value:
        raise ApiError(400, "messages must be a non-empty list of {role, content}")
    try:
        _turns_adapter.validate_python(value)
    except ValidationError as exc:
        raise ApiError(
            400, "messages entries need a role of user/assistant/system and string content"
        ) from exc
    return value


def _validate_attachments(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        raise ApiError(400, "attachments must be a list")
    try:
        _attachments_adapter.validate_python(value)
    except ValidationError as exc:
        raise ApiError(
            400, "attachments entries need a type of image/video and well-typed mime/size"
        ) from exc
    return value


def _note_capabilities(provider: ResolvedProvider, attachments: list[dict[str, Any]]) -> None:
    """Warn about attachment kinds the provider is not registered for.

    Attachments are forwarded regardless; the upstream has the final say.
    """
    kinds = {item["type"] for item in attachments}
    if "image" in kinds and not provider.capabilities.vision:
        logger.warning("Forwarding image attachments to %s without vision support", provider.key)
    if "video" in kinds and not provider.capabilities.video:
        logger.warning("Forwarding video attachments to %s without video support", provider.key)


def build_payload(
    model: str,
    messages: list[dict[str, Any]],
    system_prompt: Any = None,
    stream: bool = True,
    attachments: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Assemble the upstream body: optional system prompt, then the history."""
    outbound: list[dict[str, Any]] = []
    if isinstance(system_prompt, str) and system_prompt.strip():
        outbound.append({"role": "system", "content": system_prompt.strip()})
    outbound.extend(messages)

    payload: dict[str, Any] = {"model": model, "messages": outbound, "stream": stream}
    if attachments is not None:
        payload["attachments"] = attachments
    return payload


class ChatGateway:
    """Validates chat requests and relays them to upstream providers."""

    def __init__(self, client: httpx.AsyncClient, resolver: ProviderResolver) -> None:
        self._client = client
        self._resolver = resolver

    def prepare(self, body: Any) -> UpstreamRequest:
        """Validate ``body`` and build the upstream request. Raises ``ApiError``."""
        if not isinstance(body, dict):
            raise ApiError(400, "Request body must be a JSON object")

        messages = _validate_messages(body.get("messages"))

        model = body.get("model")
        if not isinstance(model, str):
            raise ApiError(400, "model must be a string")

        provider_key = body.get("provider")
        if not isinstance(provider_key, str):
            raise ApiError(400, "provider must be a string")

        override = ProviderOverride.from_raw(body.get("providerConfig"))
        provider = self._resolver.resolve(
            provider_key, allow_missing_secret=bool(override.api_key), override=override
        )
        if provider is None:
            raise ApiError(400, f"Unknown provider {provider_key!r} or its API key is missing")

        if not provider.allows_model(model):
            raise ApiError(400, f"model {model!r} is not allowed for provider {provider_key!r}")

        attachments = body.get("attachments")
        if attachments is not None:
            attachments = _validate_attachments(attachments)
            _note_capabilities(provider, attachments)

        options = body.get("options")
        stream = True
        if isinstance(options, dict) and isinstance(options.get("stream"), bool):
            stream = options["stream"]

        payload = build_payload(
            model,
            messages,
            system_prompt=body.get("systemPrompt"),
            stream=stream,
            attachments=attachments,
        )
        return UpstreamRequest(provider=provider, model=model, payload=payload)

    async def forward(self, request: UpstreamRequest) -> httpx.Response:
        """Send ``request`` upstream and return the open response.

        The caller owns the returned response and must close it.
        """
        provider = request.provider
        if provider.uses_override_secret:
            logger.info(
                "Forwarding to %s with a caller-supplied API key", provider.key
            )
        logger.info(
            "Forwarding chat request: provider=%s model=%s messages=%d",
            provider.key,
            request.model,
            len(request.payload["messages"]),
        )

        outbound = self._client.build_request(
            "POST", provider.endpoint, json=request.payload, headers=request.headers
        )
        try:
            upstream = await self._client.send(outbound, stream=True)
        except httpx.ReadTimeout as exc:
            logger.warning("Upstream %s accepted the request but timed out: %s", provider.key, exc)
            raise ApiError(504, "Upstream request timed out") from exc
        except httpx.TransportError as exc:
            logger.warning("Upstream %s unreachable: %s", provider.key, exc)
            raise ApiError(502, "Upstream request failed, please retry later") from exc

        if upstream.is_success:
            return upstream

        try:
            await upstream.aread()
            text = upstream.text
        except httpx.HTTPError:
            text = ""
        finally:
            await upstream.aclose()

        status = upstream.status_code or 502
        logger.warning("Upstream %s returned %d", provider.key, status)
        if status in (401, 403):
            raise ApiError(status, UPSTREAM_AUTH_FAILED)
        raise ApiError(status, text or "Upstream returned an error")


def relay_headers(upstream: httpx.Response) -> dict[str, str]:
    return {
        "Content-Type": upstream.headers.get("content-type", DEFAULT_CONTENT_TYPE),
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
    }


def error_event(exc: BaseException) -> bytes:
    reason = f"{type(exc).__name__}: {exc}".replace("\n", " ")
    return f"event: error\ndata: {reason}\n\n".encode("utf-8")


async def relay_stream(upstream: httpx.Response) -> AsyncIterator[bytes]:
    """Yield upstream chunks as they arrive, closing the upstream on every exit."""
    try:
        async for chunk in upstream.aiter_bytes():
            if chunk:
                yield chunk
    except (httpx.HTTPError, httpx.StreamError) as exc:
        logger.warning("Upstream stream interrupted: %s", exc)
        yield error_event(exc)
    finally:
        await upstream.aclose()
