"""Root test configuration for leadgate.

Clears every environment variable leadgate reads so a developer's shell
(or CI secrets) cannot leak into a test. Tests that need a value set it
with monkeypatch or pass an explicit environ mapping to load_config().
"""

from __future__ import annotations

import os
from typing import Any, AsyncIterator

import pytest

from leadgate.ratelimit.sqlite_store import LocalSQLiteRateLimitStore

_LEADGATE_ENV_VARS = (
    "APP_PASSCODE",
    "SESSION_SECRET",
    "SESSION_TTL_SECONDS",
    "SESSION_COOKIE_SECURE",
    "AUTH_DISABLED_FOR_TESTS",
    "RATE_LIMIT_DISABLED",
    "CRON_SECRET",
    "SUPABASE_URL",
    "VITE_SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "LEADGATE_CONFIG",
    "LEADGATE_PORT",
    "LEADGATE_RATE_LIMIT_DB_PATH",
)


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove leadgate environment variables, including per-route overrides."""
    for name in _LEADGATE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    for name in list(os.environ):
        if name.startswith(("RATE_LIMIT_", "RATE_WINDOW_")):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def reset_login_limiter() -> None:
    """Reset the in-memory slowapi storage between tests.

    Prevents test-to-test bleed where several login tests within the same
    minute would trip the per-IP login cap.
    """
    from leadgate.auth.limiter import limiter

    limiter.reset()


@pytest.fixture
async def sqlite_store(tmp_path: Any) -> AsyncIterator[LocalSQLiteRateLimitStore]:
    """Initialized LocalSQLiteRateLimitStore in a temporary directory."""
    store = LocalSQLiteRateLimitStore(db_path=str(tmp_path / "rate_limits.db"))
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
async def fallback_sqlite_store(tmp_path: Any) -> AsyncIterator[LocalSQLiteRateLimitStore]:
    """SQLite store forced onto the optimistic (non-atomic) path."""
    store = LocalSQLiteRateLimitStore(
        db_path=str(tmp_path / "rate_limits_fallback.db"),
        atomic_increment=False,
    )
    await store.initialize()
    yield store
    await store.close()
