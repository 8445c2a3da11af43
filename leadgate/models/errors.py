"""Error types and JSON response builders for the leadgate HTTP surface.

Every error response has the same envelope, so callers can branch on a
stable ``code`` field:

.. code-block:: json

    {"ok": false, "error": {"code": "<code>", "message": "<text>", "details": {...}}}

``details`` is present only where documented (rate limiting). No response
body ever contains a stack trace, a secret, or a secret fragment; the
detail of a ConfigError stays in the server logs via to_safe_context().

Status mapping:
  AuthDenied            → 401 unauthorized
  RateLimited           → 429 rate_limited  (+ Retry-After, X-RateLimit-*)
  ConfigError           → 500 config_error
  RateLimitExceeded     → 429 rate_limited  (slowapi per-IP login cap)
  RequestValidationError→ 400 invalid_request
  HTTPException         → status as raised, code from detail or status
  Exception             → 500 internal_error
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from leadgate.constants import (
    HEADER_RATE_LIMIT_LIMIT,
    HEADER_RATE_LIMIT_REMAINING,
    HEADER_RATE_LIMIT_RESET,
    HEADER_RETRY_AFTER,
)
from leadgate.security.bytestring import ConfigError
from leadgate.utils.logger import get_logger

if TYPE_CHECKING:
    from leadgate.ratelimit.limiter import RateLimitResult

logger = get_logger(__name__)

# Fallback Retry-After when a denial somehow lacks a computed value.
_DEFAULT_RETRY_AFTER_S = 60

_STATUS_CODES: dict[int, str] = {
    400: "invalid_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    429: "rate_limited",
    503: "unavailable",
}


# ─── Exceptions ───────────────────────────────────────────────────────────────


class AuthDenied(Exception):
    """Missing, invalid or expired credential.

    The reason is never distinguished in the response; tampering, expiry and
    absence all collapse to the same 401 body.
    """

    def __init__(
        self,
        message: str = "Authentication required",
        code: str = "unauthorized",
        status_code: int = 401,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code


class RateLimited(Exception):
    """Quota exceeded for the current window. Carries the limiter decision."""

    def __init__(self, result: "RateLimitResult") -> None:
        super().__init__("Rate limit exceeded")
        self.result = result


# ─── Response builders ────────────────────────────────────────────────────────


def error_body(code: str, message: str, details: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    return {"ok": False, "error": error}


def build_error_response(
    status_code: int,
    code: str,
    message: str,
    details: Optional[dict[str, Any]] = None,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    """Build a JSON error response in the shared envelope."""
    return JSONResponse(
        status_code=status_code,
        content=error_body(code, message, details),
        headers=headers,
    )


def rate_limit_headers(result: "RateLimitResult") -> dict[str, str]:
    """Quota-disclosure headers set on every rate-limited route response."""
    return {
        HEADER_RATE_LIMIT_LIMIT: str(result.limit),
        HEADER_RATE_LIMIT_REMAINING: str(result.remaining),
        HEADER_RATE_LIMIT_RESET: str(result.reset_epoch_seconds),
    }


def build_rate_limited_response(result: "RateLimitResult") -> JSONResponse:
    """Build the HTTP 429 response for a denied rate-limit check.

    Headers set:
      - X-RateLimit-Limit / X-RateLimit-Remaining / X-RateLimit-Reset
      - Retry-After: <seconds until the window resets>
    """
    retry_after = result.retry_after_seconds or _DEFAULT_RETRY_AFTER_S
    headers = rate_limit_headers(result)
    headers[HEADER_RETRY_AFTER] = str(retry_after)
    return build_error_response(
        status_code=429,
        code="rate_limited",
        message=f"Rate limit exceeded. Try again in {retry_after} seconds.",
        details={
            "limit": result.limit,
            "remaining": result.remaining,
            "retryAfterSeconds": retry_after,
            "resetAt": result.reset_at_iso,
        },
        headers=headers,
    )


def build_config_error_response(
    code: str = "config_error",
    message: str = "Server configuration error",
) -> JSONResponse:
    """HTTP 500 for a configuration problem. The detail is logged, never returned."""
    return build_error_response(500, code, message)


# ─── Exception handlers ───────────────────────────────────────────────────────


def register_exception_handlers(application: FastAPI) -> None:
    """Attach the leadgate error handlers to a FastAPI application."""

    @application.exception_handler(AuthDenied)
    async def auth_denied_handler(request: Request, exc: AuthDenied) -> JSONResponse:
        logger.info("auth_denied", path=str(request.url.path), code=exc.code)
        return build_error_response(exc.status_code, exc.code, exc.message)

    @application.exception_handler(RateLimited)
    async def rate_limited_handler(request: Request, exc: RateLimited) -> JSONResponse:
        return build_rate_limited_response(exc.result)

    @application.exception_handler(ConfigError)
    async def config_error_handler(request: Request, exc: ConfigError) -> JSONResponse:
        logger.error("config_error", path=str(request.url.path), **exc.to_safe_context())
        return build_config_error_response()

    @application.exception_handler(RateLimitExceeded)
    async def login_rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        logger.warning("ip_rate_limit_exceeded", path=str(request.url.path), limit=str(exc.detail))
        return build_error_response(
            429,
            "rate_limited",
            "Too many attempts. Try again later.",
            headers={HEADER_RETRY_AFTER: str(_DEFAULT_RETRY_AFTER_S)},
        )

    @application.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return build_error_response(400, "invalid_request", "Invalid request body")

    @application.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            path=str(request.url.path),
        )
        if isinstance(exc.detail, dict) and "code" in exc.detail:
            code = str(exc.detail["code"])
            message = str(exc.detail.get("message", ""))
        else:
            code = _STATUS_CODES.get(exc.status_code, "error")
            message = str(exc.detail)
        return build_error_response(exc.status_code, code, message, headers=exc.headers)

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return build_error_response(500, "internal_error", "Internal server error")
