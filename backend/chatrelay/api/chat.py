"""Streaming chat endpoint relaying turns to upstream providers."""

from __future__ import annotations

import logging

import httpx
from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from chatrelay.dependencies import get_http_client, get_provider_resolver
from chatrelay.gateway import ChatGateway, parse_body, relay_headers, relay_stream
from chatrelay.models.chat import ErrorBody
from chatrelay.providers import ProviderResolver

logger = logging.getLogger(__name__)
router = APIRouter()


def get_gateway(
    client: httpx.AsyncClient = Depends(get_http_client),
    resolver: ProviderResolver = Depends(get_provider_resolver),
) -> ChatGateway:
    return ChatGateway(client, resolver)


@router.post(
    "",
    responses={400: {"model": ErrorBody}, 502: {"model": ErrorBody}},
    response_class=StreamingResponse,
)
async def chat(request: Request, gateway: ChatGateway = Depends(get_gateway)) -> StreamingResponse:
    """Validate a chat turn, forward it upstream and stream the response back.

    Request body::

        {
            "messages": [{"role": "user", "content": "..."}],
            "model": "gpt-4o",
            "provider": "burncloud",
            "attachments": [{"type": "image", "url": "data:...", "mime": "image/png"}],
            "options": {"stream": true},
            "systemPrompt": "...",
            "providerConfig": {"baseUrl": "...", "apiKey": "...", "models": ["..."]}
        }
    """
    body = parse_body(await request.body())
    prepared = gateway.prepare(body)
    upstream = await gateway.forward(prepared)

    user = getattr(request.state, "user", None)
    logger.debug("Relaying %s stream for user %s", prepared.provider.key, user)

    return StreamingResponse(
        relay_stream(upstream),
        status_code=200,
        headers=relay_headers(upstream),
        background=BackgroundTask(upstream.aclose),
    )
