"""Per-IP cap on the login endpoint.

Uses slowapi (Starlette-compatible rate limiting) to slow down passcode
guessing. This is separate from the per-session fixed-window limiter in
leadgate.ratelimit: login requests have no session yet.

The Limiter instance is shared between:
  - leadgate/auth/router.py  (route decorator)
  - leadgate/main.py         (app.state.limiter + SlowAPIMiddleware registration)

RATE_LIMIT_DISABLED is read per request from the serving app's Config through
login_cap_exempt(), so apps built with different configs in one process do
not share the on/off state.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from leadgate.constants import LOGIN_RATE_LIMIT

# Module-level limiter, imported by main.py and auth/router.py
limiter = Limiter(key_func=get_remote_address)


def login_cap_exempt(request: Request) -> bool:
    """True when the app serving this request runs with RATE_LIMIT_DISABLED."""
    config = getattr(request.app.state, "config", None)
    return bool(config is not None and config.rate_limit_disabled)


__all__ = ["LOGIN_RATE_LIMIT", "limiter", "login_cap_exempt"]
