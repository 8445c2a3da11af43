"""Fixtures for leadgate HTTP integration tests.

Apps are built with create_app() and an injected Config + store. ASGITransport
does not run the lifespan, so build_app wires app.state.gatekeeper itself
with a frozen clock and an in-memory CRON_SECRET source.
"""

from __future__ import annotations

from typing import Callable, Optional

import pytest
from fastapi import FastAPI
from http_helpers import CRON_SECRET, T0, FrozenClock, add_lead_routes, make_config

from leadgate.config import Config
from leadgate.main import create_app
from leadgate.ratelimit.protocol import RateLimitStore
from leadgate.services import build_gatekeeper

AppFactory = Callable[..., FastAPI]


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(T0 + 100)


@pytest.fixture
def build_app(sqlite_store: RateLimitStore, clock: FrozenClock) -> AppFactory:
    """Return a factory: build_app(config=None, store=None, cron_secret=CRON_SECRET)."""

    def _build(
        config: Optional[Config] = None,
        store: Optional[RateLimitStore] = None,
        cron_secret: Optional[str] = CRON_SECRET,
    ) -> FastAPI:
        config = config or make_config()
        store = store if store is not None else sqlite_store
        app = create_app(config=config, store=store)
        app.state.gatekeeper = build_gatekeeper(
            config,
            store,
            clock=clock,
            secret_source=lambda: cron_secret,
        )
        add_lead_routes(app)
        return app

    return _build
