"""Operator sessions — passcode check, signed session cookies, validation.

Token format (no server-side session store):

    base64url(json({"iat": <epoch s>, "exp": <epoch s>})) "." base64url(HMAC-SHA256)

Both parts are unpadded base64url. The signature covers the encoded payload
string. A token is valid iff the signature verifies under SESSION_SECRET and
``exp`` is not in the past. Absent cookie, bad signature, malformed payload
and expiry all collapse to "not authenticated"; callers never learn which.

Configuration errors:
  - verify_passcode() and issue_session() raise ConfigError (→ HTTP 500)
  - verify_session() and has_valid_session() never raise; a missing or short
    signing key means no session can be valid, which is logged at ERROR level
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any, Callable, Mapping, Optional, Protocol

from starlette.requests import cookie_parser
from starlette.responses import Response

from leadgate.config import SessionConfig
from leadgate.constants import (
    DEFAULT_SESSION_TTL_SECONDS,
    MIN_SESSION_SECRET_LENGTH,
    SESSION_COOKIE_NAME,
)
from leadgate.security.bytestring import ConfigError, ConfigErrorKind, sanitize_byte_string
from leadgate.security.compare import safe_compare
from leadgate.utils.logger import get_logger

logger = get_logger(__name__)

_PASSCODE_LABEL = "APP_PASSCODE"
_SIGNING_KEY_LABEL = "SESSION_SECRET"


class RequestLike(Protocol):
    """The slice of an HTTP request the credential checks read."""

    @property
    def headers(self) -> Mapping[str, str]: ...

    @property
    def query_params(self) -> Mapping[str, str]: ...


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


class SessionManager:
    """Issues and validates HMAC-signed operator session tokens.

    Usage:
        sessions = SessionManager.from_config(config.session)
        if sessions.verify_passcode(body.passcode):
            sessions.set_session_cookie(response)
        ...
        if not sessions.has_valid_session(request):
            raise AuthDenied()
    """

    def __init__(
        self,
        passcode: Optional[str],
        signing_key: Optional[str],
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        cookie_secure: bool = True,
        auth_disabled_for_tests: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._passcode = passcode
        self._signing_key = signing_key
        self._ttl_seconds = ttl_seconds
        self._cookie_secure = cookie_secure
        self._auth_disabled_for_tests = auth_disabled_for_tests
        self._clock = clock

    @classmethod
    def from_config(cls, config: SessionConfig, clock: Callable[[], float] = time.time) -> "SessionManager":
        return cls(
            passcode=config.passcode,
            signing_key=config.signing_key,
            ttl_seconds=config.ttl_seconds,
            cookie_secure=config.cookie_secure,
            auth_disabled_for_tests=config.auth_disabled_for_tests,
            clock=clock,
        )

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    # ── Configuration ─────────────────────────────────────────────────────────

    def _signing_key_bytes(self) -> bytes:
        """Return the sanitised signing key.

        Raises:
            ConfigError: Missing, empty, non-Latin-1, or shorter than 32 characters.
        """
        key = sanitize_byte_string(self._signing_key, _SIGNING_KEY_LABEL)
        if len(key) < MIN_SESSION_SECRET_LENGTH:
            raise ConfigError(
                ConfigErrorKind.CONFIG_TOO_SHORT,
                label=_SIGNING_KEY_LABEL,
                message=f"{_SIGNING_KEY_LABEL} must be at least {MIN_SESSION_SECRET_LENGTH} characters",
                hint=f"Generate a longer {_SIGNING_KEY_LABEL} (e.g. 64 hex characters) and redeploy.",
            )
        return key.encode("utf-8")

    def _sign(self, payload_b64: str, key: bytes) -> str:
        digest = hmac.new(key, payload_b64.encode("ascii"), hashlib.sha256).digest()
        return _b64url_encode(digest)

    # ── Passcode ──────────────────────────────────────────────────────────────

    def verify_passcode(self, candidate: str) -> bool:
        """Constant-time check of candidate against APP_PASSCODE.

        Raises:
            ConfigError: APP_PASSCODE is not configured (distinct from a wrong passcode).
        """
        expected = sanitize_byte_string(self._passcode, _PASSCODE_LABEL)
        return safe_compare(candidate, expected)

    # ── Tokens ────────────────────────────────────────────────────────────────

    def issue_session(self) -> str:
        """Sign a new session token valid for ttl_seconds.

        Raises:
            ConfigError: SESSION_SECRET is missing or too short.
        """
        key = self._signing_key_bytes()
        now = int(self._clock())
        payload = {"iat": now, "exp": now + self._ttl_seconds}
        payload_b64 = _b64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
        return f"{payload_b64}.{self._sign(payload_b64, key)}"

    def verify_session(self, token: Optional[str]) -> bool:
        """Return True iff token carries a valid signature and an unexpired payload."""
        if not token:
            return False

        try:
            key = self._signing_key_bytes()
        except ConfigError as exc:
            logger.error("session_signing_key_invalid", **exc.to_safe_context())
            return False

        parts = token.split(".")
        if len(parts) != 2:
            return False
        payload_b64, signature = parts

        try:
            expected = self._sign(payload_b64, key)
        except UnicodeEncodeError:
            return False
        if not safe_compare(signature, expected):
            return False

        try:
            payload: Any = json.loads(_b64url_decode(payload_b64))
            expires_at = int(payload["exp"])
        except (ValueError, TypeError, KeyError):
            return False

        return expires_at >= int(self._clock())

    # ── Requests ──────────────────────────────────────────────────────────────

    def session_from_request(self, request: RequestLike) -> Optional[str]:
        """Extract the session cookie value, or None when absent."""
        cookie_header = request.headers.get("cookie")
        if not cookie_header:
            return None
        return cookie_parser(cookie_header).get(SESSION_COOKIE_NAME) or None

    def has_valid_session(self, request: RequestLike) -> bool:
        """Session guard predicate. AUTH_DISABLED_FOR_TESTS short-circuits to True."""
        if self._auth_disabled_for_tests:
            return True
        return self.verify_session(self.session_from_request(request))

    # ── Cookies ───────────────────────────────────────────────────────────────

    def set_session_cookie(self, response: Response) -> str:
        """Issue a token and attach it as an HttpOnly, SameSite=Strict cookie.

        Raises:
            ConfigError: SESSION_SECRET is missing or too short.
        """
        token = self.issue_session()
        response.set_cookie(
            key=SESSION_COOKIE_NAME,
            value=token,
            max_age=self._ttl_seconds,
            path="/",
            httponly=True,
            samesite="strict",
            secure=self._cookie_secure,
        )
        return token

    def clear_session_cookie(self, response: Response) -> None:
        response.delete_cookie(
            key=SESSION_COOKIE_NAME,
            path="/",
            httponly=True,
            samesite="strict",
            secure=self._cookie_secure,
        )
