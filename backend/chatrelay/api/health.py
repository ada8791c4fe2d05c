"""Health check endpoint for infrastructure monitoring."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from chatrelay.auth.session import SessionAuthenticator
from chatrelay.config import settings
from chatrelay.dependencies import get_authenticator, get_provider_resolver
from chatrelay.providers import ProviderResolver

router = APIRouter()


@router.get("")
async def health_check(
    resolver: ProviderResolver = Depends(get_provider_resolver),
    auth: SessionAuthenticator = Depends(get_authenticator),
) -> dict[str, Any]:
    """Report which providers resolve and whether authentication is configured."""
    providers = {
        key: "ready" if resolver.resolve(key) is not None else "missing_api_key"
        for key in resolver.keys
    }
    auth_status = "configured" if auth.is_configured else "misconfigured"

    overall = (
        "healthy"
        if auth.is_configured and any(s == "ready" for s in providers.values())
        else "degraded"
    )
    return {
        "status": overall,
        "default_provider": settings.default_provider,
        "services": {"auth": auth_status, "providers": providers},
    }
