"""Operator session endpoints.

Provides:
  POST /api/auth/login   — exchange the passcode for an lr_session cookie
  GET  /api/auth/me      — 200 if the session cookie is valid, else 401
  POST /api/auth/logout  — clear the session cookie

Login is capped per client IP by slowapi (LOGIN_RATE_LIMIT). Responses use
the shared {ok, error: {code, message}} envelope.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from leadgate.auth.limiter import LOGIN_RATE_LIMIT, limiter, login_cap_exempt
from leadgate.models.errors import build_config_error_response, build_error_response
from leadgate.security.bytestring import ConfigError
from leadgate.services import Gatekeeper, get_gatekeeper
from leadgate.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["auth"])


# ─── Request Models ───────────────────────────────────────────────────────────


class LoginRequest(BaseModel):
    """Request body for POST /api/auth/login."""

    passcode: Optional[str] = None


# ─── Endpoints ────────────────────────────────────────────────────────────────


@router.post("/auth/login")
@limiter.limit(LOGIN_RATE_LIMIT, exempt_when=login_cap_exempt)
async def login(
    body: LoginRequest,
    request: Request,
    gatekeeper: Gatekeeper = Depends(get_gatekeeper),
) -> JSONResponse:
    """Verify the passcode and set the session cookie.

    Returns:
        200 {"ok": true} with Set-Cookie: lr_session=...
        400 invalid_request      — passcode missing or not a string
        401 invalid_passcode     — wrong passcode
        500 server_config_error  — APP_PASSCODE / SESSION_SECRET unusable
    """
    if not body.passcode:
        return build_error_response(400, "invalid_request", "Passcode is required")

    sessions = gatekeeper.session_manager
    try:
        if not sessions.verify_passcode(body.passcode):
            logger.info("login_rejected")
            return build_error_response(401, "invalid_passcode", "Invalid passcode")

        response = JSONResponse(content={"ok": True})
        sessions.set_session_cookie(response)
    except ConfigError as exc:
        logger.error("login_config_error", **exc.to_safe_context())
        return build_config_error_response("server_config_error", "Authentication not configured")

    logger.info("login_succeeded", ttl_seconds=sessions.ttl_seconds)
    return response


@router.get("/auth/me")
async def me(
    request: Request,
    gatekeeper: Gatekeeper = Depends(get_gatekeeper),
) -> JSONResponse:
    """Report whether the caller holds a valid session. Never exposes config errors."""
    if gatekeeper.session_manager.has_valid_session(request):
        return JSONResponse(content={"ok": True})
    return build_error_response(401, "unauthorized", "Not authenticated")


@router.post("/auth/logout")
async def logout(gatekeeper: Gatekeeper = Depends(get_gatekeeper)) -> JSONResponse:
    response = JSONResponse(content={"ok": True})
    gatekeeper.session_manager.clear_session_cookie(response)
    return response
