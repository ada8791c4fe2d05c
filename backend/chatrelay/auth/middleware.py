"""Basic-auth session gate applied to every non-exempt request."""

from __future__ import annotations

import logging
from typing import Callable, Iterable

from fastapi import Request
from fastapi.responses import PlainTextResponse, RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette.types import ASGIApp

from chatrelay.auth.session import SessionAuthenticator, decode_basic_authorization

logger = logging.getLogger(__name__)

LOGOUT_PATH = "/logout"
LOGOUT_MARKER_MAX_AGE = 300
DEFAULT_EXEMPT_PATHS = ("/api/health", "/favicon.ico", "/static/")


def _safe_redirect_target(target: str | None) -> str:
    """Only same-origin relative paths are accepted as redirect targets."""
    if not target or not target.startswith("/") or target.startswith("//"):
        return "/"
    return target


def _sets_cookie(response: Response, name: str) -> bool:
    prefix = f"{name}=".encode("latin-1")
    return any(
        key == b"set-cookie" and value.startswith(prefix)
        for key, value in response.raw_headers
    )


class SessionAuthMiddleware(BaseHTTPMiddleware):
    """Gate requests behind a signed session cookie or Basic credentials.

    ``authenticator_provider`` is called per request so that a reloaded
    authenticator takes effect without rebuilding the app.
    """

    def __init__(
        self,
        app: ASGIApp,
        authenticator_provider: Callable[[], SessionAuthenticator],
        exempt_paths: Iterable[str] = DEFAULT_EXEMPT_PATHS,
    ) -> None:
        super().__init__(app)
        self._authenticator_provider = authenticator_provider
        self._exempt_paths = tuple(exempt_paths)

    def _is_exempt(self, path: str) -> bool:
        for exempt in self._exempt_paths:
            if exempt.endswith("/") and path.startswith(exempt):
                return True
            if path == exempt:
                return True
        return False

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if self._is_exempt(request.url.path):
            return await call_next(request)

        auth = self._authenticator_provider()
        config_error = auth.configuration_error()
        if config_error:
            logger.error("Session authentication misconfigured: %s", config_error)
            return PlainTextResponse(config_error, status_code=500)

        secure = request.url.scheme == "https"

        if request.url.path == LOGOUT_PATH:
            return self._handle_logout(request, auth, secure)

        token = request.cookies.get(auth.cookie_name)
        if token:
            payload = auth.verify(token)
            if payload is not None:
                request.state.user = payload.username
                return await call_next(request)

        credential = decode_basic_authorization(request.headers.get("authorization"))
        if credential is None:
            return self._unauthorized(auth, "Basic credentials required")
        if not auth.check_credentials(credential.username, credential.password):
            logger.info("Rejected Basic credentials for user %s", credential.username)
            return self._unauthorized(auth, "Invalid username or password")

        request.state.user = credential.username
        response = await call_next(request)
        # Endpoints that manage the session cookie themselves (logout) take precedence.
        if not _sets_cookie(response, auth.cookie_name):
            self._set_session_cookie(response, auth, credential.username, secure)
        return response

    def _handle_logout(
        self, request: Request, auth: SessionAuthenticator, secure: bool
    ) -> Response:
        has_marker = request.cookies.get(auth.logout_cookie_name) == "1"

        # Phase 1: drop the session and force the browser to forget cached credentials.
        if not has_marker:
            response = self._unauthorized(auth, "Logged out")
            response.delete_cookie(
                auth.cookie_name, path="/", httponly=True, samesite="lax", secure=secure
            )
            response.set_cookie(
                auth.logout_cookie_name,
                "1",
                max_age=LOGOUT_MARKER_MAX_AGE,
                path="/",
                httponly=True,
                samesite="lax",
                secure=secure,
            )
            return response

        # Phase 2: the marker is present, so only fresh credentials log back in.
        credential = decode_basic_authorization(request.headers.get("authorization"))
        if credential is None:
            return self._unauthorized(auth, "Please log in again")
        if not auth.check_credentials(credential.username, credential.password):
            logger.info("Rejected re-login for user %s", credential.username)
            return self._unauthorized(auth, "Invalid username or password")

        target = _safe_redirect_target(request.query_params.get("next"))
        response = RedirectResponse(target, status_code=307)
        self._set_session_cookie(response, auth, credential.username, secure)
        response.delete_cookie(auth.logout_cookie_name, path="/")
        logger.info("User %s logged back in", credential.username)
        return response

    @staticmethod
    def _set_session_cookie(
        response: Response, auth: SessionAuthenticator, username: str, secure: bool
    ) -> None:
        response.set_cookie(
            auth.cookie_name,
            auth.mint(username),
            max_age=auth.ttl_seconds,
            path="/",
            httponly=True,
            samesite="lax",
            secure=secure,
        )

    @staticmethod
    def _unauthorized(auth: SessionAuthenticator, message: str) -> Response:
        return PlainTextResponse(
            message,
            status_code=401,
            headers={"WWW-Authenticate": f'Basic realm="{auth.realm}", charset="UTF-8"'},
        )
