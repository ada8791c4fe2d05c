"""Registry of upstream text-generation providers and per-request resolution."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

import httpx

from chatrelay.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Capabilities:
    vision: bool = False
    video: bool = False


@dataclass(frozen=True)
class ProviderSpec:
    """Static description of a provider as registered with the relay."""

    name: str
    base_url: str
    path: str
    api_key_env: str
    models: tuple[str, ...] = ()
    capabilities: Capabilities = field(default_factory=Capabilities)


@dataclass(frozen=True)
class ProviderOverride:
    """Caller-supplied values that win over the registry for one request."""

    base_url: Optional[str] = None
    api_key: Optional[str] = None
    models: Optional[tuple[str, ...]] = None

    @classmethod
    def from_raw(cls, raw: Any) -> "ProviderOverride":
        """Build from the ``providerConfig`` request field, ignoring mistyped values."""
        if not isinstance(raw, dict):
            return cls()
        base_url = raw.get("baseUrl")
        api_key = raw.get("apiKey")
        models = raw.get("models")
        return cls(
            base_url=base_url if isinstance(base_url, str) else None,
            api_key=api_key if isinstance(api_key, str) else None,
            models=tuple(m for m in models if isinstance(m, str))
            if isinstance(models, list)
            else None,
        )


@dataclass(frozen=True)
class ResolvedProvider:
    """Fully specified upstream target for a single request."""

    key: str
    name: str
    base_url: str
    path: str
    models: tuple[str, ...]
    capabilities: Capabilities
    headers: dict[str, str]
    uses_override_secret: bool = False

    @property
    def endpoint(self) -> str:
        return str(httpx.URL(self.base_url).join(self.path))

    def allows_model(self, model: str) -> bool:
        return not self.models or model in self.models


def default_registry(settings: Settings) -> dict[str, ProviderSpec]:
    """Return the built-in provider registry with base URLs from settings."""
    return {
        "burncloud": ProviderSpec(
            name="BurnCloud",
            base_url=settings.burncloud_base_url,
            path="/v1/chat/completions",
            api_key_env="BURNCLOUD_API_KEY",
            models=(
                "gpt-4.1",
                "gpt-4o",
                "claude-3-7-sonnet-20250219",
                "claude-3-5-sonnet-20241022",
                "deepseek-r1",
                "deepseek-v3",
            ),
            capabilities=Capabilities(vision=True, video=False),
        ),
        "openai": ProviderSpec(
            name="OpenAI",
            base_url=settings.openai_base_url,
            path="/v1/chat/completions",
            api_key_env="OPENAI_API_KEY",
            models=("gpt-4o", "gpt-4.1", "gpt-3.5-turbo"),
            capabilities=Capabilities(vision=True, video=False),
        ),
    }


class ProviderResolver:
    """Maps a provider key to connection details.

    Secrets are looked up by the provider's ``api_key_env`` binding in the
    ``secrets`` mapping handed over at construction.
    """

    def __init__(
        self,
        registry: Mapping[str, ProviderSpec],
        secrets: Mapping[str, str],
    ) -> None:
        self._registry = dict(registry)
        self._secrets = dict(secrets)

    @property
    def keys(self) -> list[str]:
        return list(self._registry)

    def resolve(
        self,
        key: str,
        allow_missing_secret: bool = False,
        override: ProviderOverride | None = None,
    ) -> ResolvedProvider | None:
        """Resolve ``key`` or return ``None`` if unknown or missing its secret.

        A missing registry secret is tolerated only when ``allow_missing_secret``
        is set, i.e. the caller brings its own credential. Values in
        ``override`` take precedence over the registry for this request.
        """
        spec = self._registry.get(key)
        if spec is None:
            return None

        override = override or ProviderOverride()
        if override.api_key:
            allow_missing_secret = True

        secret = self._secrets.get(spec.api_key_env) or ""
        if not secret and not allow_missing_secret:
            logger.warning(
                "Provider %s has no secret configured (%s)", key, spec.api_key_env
            )
            return None

        headers: dict[str, str] = {}
        if secret:
            headers["Authorization"] = f"Bearer {secret}"
        if override.api_key:
            headers["Authorization"] = f"Bearer {override.api_key}"

        return ResolvedProvider(
            key=key,
            name=spec.name,
            base_url=override.base_url or spec.base_url,
            path=spec.path,
            models=override.models if override.models is not None else spec.models,
            capabilities=spec.capabilities,
            headers=headers,
            uses_override_secret=bool(override.api_key),
        )
