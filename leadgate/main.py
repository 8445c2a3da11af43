"""leadgate FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app() — testable application factory
  - lifespan     — @asynccontextmanager startup/shutdown sequence
  - app = create_app() — module-level instance for uvicorn

Startup sequence:
  1. load_config()               → app.state.config   (skipped if injected)
  2. create_rate_limit_store()   → app.state.store    (skipped if injected)
  3. build_gatekeeper()          → app.state.gatekeeper
  4. app.state.ready = True

Shutdown (reverse):
  app.state.ready = False → close the store (only if the lifespan created it)

Routes:
  /api/auth/login, /api/auth/me, /api/auth/logout  — leadgate.auth.router
  /api/cron/rate-limits/cleanup                    — leadgate.cron.router
  /health                                          — leadgate.health
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from slowapi.middleware import SlowAPIMiddleware

from leadgate.auth.limiter import limiter
from leadgate.auth.router import router as auth_router
from leadgate.config import Config, load_config
from leadgate.cron.router import router as cron_router
from leadgate.health import router as health_router
from leadgate.middleware import RequestIdMiddleware
from leadgate.models.errors import register_exception_handlers
from leadgate.ratelimit.factory import create_rate_limit_store
from leadgate.ratelimit.protocol import RateLimitStore
from leadgate.services import build_gatekeeper
from leadgate.utils.logger import configure_logging, get_logger

# ─── Logging Setup ────────────────────────────────────────────────────────────
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan — startup and shutdown sequence.

    A Config or store injected through create_app() is used as-is; an
    injected store is assumed to be initialized and is not closed here.
    """
    logger.info("leadgate starting up...")

    # ── Step 1: Configuration ─────────────────────────────────────────────────
    # load_config() raises SystemExit on parse error or invalid overrides.
    config: Optional[Config] = getattr(app.state, "config", None)
    if config is None:
        config = load_config()
        app.state.config = config

    # ── Step 2: Rate-limit store ──────────────────────────────────────────────
    # LocalSQLiteRateLimitStore.initialize() raises RuntimeError on an unknown
    # schema version; that propagates and refuses startup.
    store: Optional[RateLimitStore] = getattr(app.state, "store", None)
    owns_store = store is None
    if store is None:
        store = await create_rate_limit_store(config.store)
        app.state.store = store

    # ── Step 3: Service container ─────────────────────────────────────────────
    if getattr(app.state, "gatekeeper", None) is None:
        app.state.gatekeeper = build_gatekeeper(config, store)

    app.state.ready = True
    logger.info(
        "leadgate ready",
        store=type(store).__name__,
        rate_limiting="disabled" if config.rate_limit_disabled else "enabled",
        auth_disabled_for_tests=config.session.auth_disabled_for_tests,
    )

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────────
    logger.info("leadgate shutting down...")
    app.state.ready = False

    if owns_store:
        try:
            await store.close()
        except Exception as exc:
            logger.warning("Rate limit store close error (non-fatal)", error=str(exc))

    logger.info("leadgate shutdown complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app(
    config: Optional[Config] = None,
    store: Optional[RateLimitStore] = None,
) -> FastAPI:
    """Create and configure the leadgate FastAPI application.

    Call this function directly in tests to get an isolated app instance:
        app = create_app(config=Config.defaults(), store=store)

    Args:
        config: Pre-built Config; load_config() runs at startup when None.
        store:  Initialized RateLimitStore; the factory selects one when None.
    """
    application = FastAPI(
        title="leadgate",
        description="Credential verification and per-session rate limiting",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if DEBUG else None,
        redoc_url="/redoc" if DEBUG else None,
        openapi_url="/openapi.json" if DEBUG else None,
    )

    application.state.ready = False
    application.state.config = config
    application.state.store = store
    application.state.gatekeeper = None

    # Login cap: attached to app state as required by slowapi.
    application.state.limiter = limiter
    register_exception_handlers(application)

    # In Starlette the LAST-added middleware is OUTERMOST (runs first).
    application.add_middleware(SlowAPIMiddleware)
    application.add_middleware(RequestIdMiddleware)

    application.include_router(health_router)
    application.include_router(auth_router, prefix="/api")
    application.include_router(cron_router, prefix="/api")

    return application


# ─── Module-Level App (for uvicorn) ───────────────────────────────────────────

app = create_app()
