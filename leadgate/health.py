"""Health endpoint for leadgate.

Implements:
  GET /health — 503 before the lifespan has built the Gatekeeper, 200 after

Response body (200):
    {
      "status": "ok" | "degraded",
      "store": "LocalSQLiteRateLimitStore" | "SupabaseRateLimitStore" | ...,
      "store_healthy": true | false,
      "rate_limiting": "enabled" | "disabled",
      "routes": {"generate": {"limit": 20, "window_seconds": 3600}, ...}
    }

A degraded store does not fail the probe: rate limiting fails open, so the
service keeps answering requests.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from leadgate.services import Gatekeeper, get_gatekeeper

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    gatekeeper: Gatekeeper = get_gatekeeper(request)
    store_healthy = await gatekeeper.store.health_check()
    config = gatekeeper.config

    return {
        "status": "ok" if store_healthy else "degraded",
        "store": type(gatekeeper.store).__name__,
        "store_healthy": store_healthy,
        "rate_limiting": "disabled" if config.rate_limit_disabled else "enabled",
        "routes": {
            route.lower().replace("_", "-"): {
                "limit": policy.limit,
                "window_seconds": policy.window_seconds,
            }
            for route, policy in sorted(config.policies.as_dict().items())
        },
    }
