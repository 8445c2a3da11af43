"""Process-wide service container stored on app.state.gatekeeper.

Built once in the lifespan (or directly in tests) from an immutable Config
and an initialized RateLimitStore. Route dependencies read it through
get_gatekeeper(); nothing in the request path reads os.environ except the
machine credential source, which is read per verification.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from fastapi import HTTPException, Request

from leadgate.auth.machine import MachineCredentialVerifier, SecretSource, env_secret_source
from leadgate.auth.session import SessionManager
from leadgate.config import Config
from leadgate.ratelimit.limiter import FixedWindowRateLimiter
from leadgate.ratelimit.protocol import RateLimitStore


@dataclass(frozen=True)
class Gatekeeper:
    config: Config
    store: RateLimitStore
    session_manager: SessionManager
    machine_verifier: MachineCredentialVerifier
    rate_limiter: FixedWindowRateLimiter


def build_gatekeeper(
    config: Config,
    store: RateLimitStore,
    clock: Callable[[], float] = time.time,
    secret_source: SecretSource = env_secret_source,
) -> Gatekeeper:
    """Wire the verifiers and the limiter from one Config and one store."""
    return Gatekeeper(
        config=config,
        store=store,
        session_manager=SessionManager.from_config(config.session, clock=clock),
        machine_verifier=MachineCredentialVerifier(secret_source=secret_source),
        rate_limiter=FixedWindowRateLimiter(
            store=store,
            policies=config.policies,
            max_conflict_retries=config.store.max_conflict_retries,
            clock=clock,
        ),
    )


def get_gatekeeper(request: Request) -> Gatekeeper:
    """FastAPI dependency: the Gatekeeper for this app, or 503 before startup completes."""
    gatekeeper = getattr(request.app.state, "gatekeeper", None)
    if gatekeeper is None:
        raise HTTPException(
            status_code=503,
            detail={"code": "unavailable", "message": "Service is starting up"},
        )
    return gatekeeper
