"""FastAPI route guard for per-session fixed-window rate limiting.

Usage:
    @router.post("/leads/generate")
    async def generate(rate: Optional[RateLimitResult] = Depends(enforce_rate_limit("generate"))):
        return {"ok": True}

Behaviour per request:
  - RATE_LIMIT_DISABLED=true       → skipped (no store call, no headers)
  - no lr_session cookie           → skipped (the session guard rejects it)
  - allowed (including fail-open)  → X-RateLimit-* headers set on the response
  - denied                         → RateLimited raised → 429 + Retry-After

Quota headers are merged by FastAPI only when the handler returns a plain
value (dict / model), not a Response instance.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Optional

from fastapi import Depends, Request, Response

from leadgate.models.errors import RateLimited, rate_limit_headers
from leadgate.ratelimit.limiter import RateLimitResult, hash_session
from leadgate.services import Gatekeeper, get_gatekeeper

RateLimitDependency = Callable[..., Awaitable[Optional[RateLimitResult]]]


def enforce_rate_limit(route_key: str) -> RateLimitDependency:
    """Build a dependency that counts the request against route_key's quota."""

    async def rate_limit_dependency(
        request: Request,
        response: Response,
        gatekeeper: Gatekeeper = Depends(get_gatekeeper),
    ) -> Optional[RateLimitResult]:
        if gatekeeper.config.rate_limit_disabled:
            return None

        token = gatekeeper.session_manager.session_from_request(request)
        if not token:
            return None

        result = await gatekeeper.rate_limiter.check(hash_session(token), route_key)
        if not result.allowed:
            raise RateLimited(result)

        response.headers.update(rate_limit_headers(result))
        return result

    return rate_limit_dependency
