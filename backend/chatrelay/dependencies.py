"""Dependency injection providers for FastAPI."""

import logging

import httpx

from chatrelay.auth.session import SessionAuthenticator
from chatrelay.config import Settings, settings
from chatrelay.providers import ProviderResolver, default_registry

logger = logging.getLogger(__name__)

# Global singleton instances (safe for a single event loop)
_http_client: httpx.AsyncClient | None = None
_authenticator: SessionAuthenticator | None = None
_provider_resolver: ProviderResolver | None = None


def upstream_timeout(config: Settings) -> httpx.Timeout:
    """Read deadline for upstream calls, with a shorter connect deadline."""
    return httpx.Timeout(
        config.upstream_timeout_seconds,
        connect=config.upstream_connect_timeout_seconds,
    )


def get_http_client() -> httpx.AsyncClient:
    """Return the shared upstream HTTP client."""
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(timeout=upstream_timeout(settings))
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None


def get_authenticator() -> SessionAuthenticator:
    """Return the authenticator built from settings at first use or last reload."""
    global _authenticator
    if _authenticator is None:
        _authenticator = SessionAuthenticator.from_settings(settings)
    return _authenticator


def reload_authenticator(config: Settings | None = None) -> SessionAuthenticator:
    """Rebuild the authenticator, e.g. after the session secret or users rotate."""
    global _authenticator
    _authenticator = SessionAuthenticator.from_settings(config or Settings())
    logger.info(
        "Session authenticator loaded with %d credential(s)",
        len(_authenticator.credentials),
    )
    return _authenticator


def get_provider_resolver() -> ProviderResolver:
    """Return the provider resolver singleton."""
    global _provider_resolver
    if _provider_resolver is None:
        _provider_resolver = ProviderResolver(
            default_registry(settings), settings.provider_secrets()
        )
    return _provider_resolver
