"""Stateless signed session tokens and the Basic credential set.

Token format::

    username|expiresAtEpochSeconds|sha256(username|expiresAtEpochSeconds|secret)

Validity is reconstructible from the token plus the server secret; there is
no server-side session table.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Optional

from chatrelay.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    username: str
    password: str


@dataclass(frozen=True)
class SessionPayload:
    username: str
    expires_at: int


def parse_credentials(raw: str) -> tuple[Credential, ...]:
    """Parse ``user:pass,user2:pass2`` into credentials, skipping blank entries."""
    credentials = []
    for pair in raw.split(","):
        pair = pair.strip()
        if not pair:
            continue
        username, _, password = pair.partition(":")
        username = username.strip()
        if username and password:
            credentials.append(Credential(username=username, password=password))
    return tuple(credentials)


def decode_basic_authorization(header: Optional[str]) -> Optional[Credential]:
    """Decode an ``Authorization: Basic ...`` header; ``None`` when absent or malformed."""
    if not header or not header.startswith("Basic "):
        return None
    try:
        decoded = base64.b64decode(header[6:].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, sep, password = decoded.partition(":")
    if not sep:
        return None
    return Credential(username=username, password=password)


def _sign(username: str, expires_at: int, secret: str) -> str:
    return hashlib.sha256(f"{username}|{expires_at}|{secret}".encode("utf-8")).hexdigest()


def generate_session_value(username: str, expires_at: int, secret: str) -> str:
    return f"{username}|{expires_at}|{_sign(username, expires_at, secret)}"


def verify_session_value(
    value: Optional[str], secret: str, now: Optional[float] = None
) -> Optional[SessionPayload]:
    """Return the payload of a valid, unexpired token, else ``None``."""
    if not value:
        return None
    parts = value.split("|")
    if len(parts) != 3:
        return None
    username, expires_raw, signature = parts
    if not username or not signature:
        return None
    # Plain ASCII digits without leading zeros, so the signed text has a single spelling.
    if not (expires_raw.isascii() and expires_raw.isdigit()):
        return None
    expires_at = int(expires_raw)
    if str(expires_at) != expires_raw:
        return None
    current = time.time() if now is None else now
    if expires_at < current:
        return None
    expected = _sign(username, expires_at, secret)
    if not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
        return None
    return SessionPayload(username=username, expires_at=expires_at)


class SessionAuthenticator:
    """Holds the session secret and credential set loaded at startup.

    ``is_configured`` is false when the deployment lacks a secret or has no
    credentials; that is an operator error and is reported separately from
    an unauthenticated request.
    """

    def __init__(
        self,
        secret: str,
        credentials: tuple[Credential, ...],
        cookie_name: str,
        logout_cookie_name: str,
        ttl_seconds: int,
        realm: str = "Chat Relay",
    ) -> None:
        self.secret = secret
        self.credentials = credentials
        self.cookie_name = cookie_name
        self.logout_cookie_name = logout_cookie_name
        self.ttl_seconds = ttl_seconds
        self.realm = realm

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionAuthenticator":
        return cls(
            secret=settings.basic_auth_session_secret,
            credentials=parse_credentials(settings.basic_auth_users),
            cookie_name=settings.basic_auth_session_cookie,
            logout_cookie_name=settings.basic_auth_logout_cookie,
            ttl_seconds=settings.session_ttl_seconds,
            realm=settings.basic_auth_realm,
        )

    def configuration_error(self) -> Optional[str]:
        if not self.secret:
            return "BASIC_AUTH_SESSION_SECRET is not configured"
        if not self.credentials:
            return "BASIC_AUTH_USERS is not configured"
        return None

    @property
    def is_configured(self) -> bool:
        return self.configuration_error() is None

    def check_credentials(self, username: str, password: str) -> bool:
        given = f"{username}:{password}".encode("utf-8")
        matched = False
        for cred in self.credentials:
            expected = f"{cred.username}:{cred.password}".encode("utf-8")
            if hmac.compare_digest(expected, given):
                matched = True
        return matched

    def mint(self, username: str, now: Optional[float] = None) -> str:
        current = time.time() if now is None else now
        expires_at = int(current) + self.ttl_seconds
        return generate_session_value(username, expires_at, self.secret)

    def verify(self, token: Optional[str], now: Optional[float] = None) -> Optional[SessionPayload]:
        return verify_session_value(token, self.secret, now)
