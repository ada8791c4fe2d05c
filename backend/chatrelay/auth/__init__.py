"""Session authentication: signed tokens, Basic credentials and the request gate."""

from .middleware import SessionAuthMiddleware
from .session import SessionAuthenticator

__all__ = ["SessionAuthMiddleware", "SessionAuthenticator"]
