"""Application configuration using pydantic-settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SESSION_TTL = 3600


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Chat Relay"
    environment: str = "development"
    log_level: str = "info"

    # Providers
    default_provider: str = "burncloud"
    burncloud_base_url: str = "https://ai.burncloud.com"
    burncloud_api_key: str = ""
    openai_base_url: str = "https://api.openai.com"
    openai_api_key: str = ""

    # Upstream deadlines (seconds)
    upstream_timeout_seconds: float = 120.0
    upstream_connect_timeout_seconds: float = 10.0

    # Basic auth sessions
    basic_auth_session_secret: str = ""
    basic_auth_users: str = ""
    basic_auth_session_cookie: str = "burncloud_basic_session"
    basic_auth_logout_cookie: str = "burncloud_basic_logout"
    basic_auth_session_ttl: int = DEFAULT_SESSION_TTL
    basic_auth_realm: str = "BurnCloud AI Chat"

    # Uploads
    max_upload_bytes: int = 5 * 1024 * 1024

    # CORS
    frontend_url: str = "http://localhost:3000"

    @property
    def session_ttl_seconds(self) -> int:
        """Session lifetime; non-positive values fall back to the default."""
        if self.basic_auth_session_ttl <= 0:
            return DEFAULT_SESSION_TTL
        return self.basic_auth_session_ttl

    def provider_secrets(self) -> dict[str, str]:
        """Map provider secret bindings to their configured values."""
        return {
            "BURNCLOUD_API_KEY": self.burncloud_api_key,
            "OPENAI_API_KEY": self.openai_api_key,
        }


settings = Settings()


def get_settings() -> Settings:
    """FastAPI dependency for injecting settings."""
    return settings
