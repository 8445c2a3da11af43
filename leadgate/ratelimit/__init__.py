"""leadgate per-session fixed-window rate limiting.

Re-exports the public API for ergonomic imports:

    from leadgate.ratelimit import FixedWindowRateLimiter, RateLimitResult, hash_session

Layout:
    policy.py          — RoutePolicy / RoutePolicyTable, build_policy_table()
    protocol.py        — RateLimitStore Protocol + WindowKey + store errors
    limiter.py         — FixedWindowRateLimiter (atomic path, optimistic fallback, fail-open)
    sqlite_store.py    — LocalSQLiteRateLimitStore (aiosqlite, WAL, PRAGMA version guard)
    supabase_store.py  — SupabaseRateLimitStore (PostgREST RPC + table API, 5s timeout)
    factory.py         — create_rate_limit_store() — backend selection by config
    guard.py           — enforce_rate_limit() FastAPI dependency + quota headers
"""

from leadgate.ratelimit.limiter import (
    FixedWindowRateLimiter,
    RateLimitResult,
    hash_session,
)
from leadgate.ratelimit.policy import (
    FALLBACK_POLICY,
    RoutePolicy,
    RoutePolicyTable,
    build_policy_table,
)
from leadgate.ratelimit.protocol import (
    AtomicIncrementUnavailable,
    RateLimitStore,
    StoreUnavailable,
    UnconfiguredRateLimitStore,
    WindowConflict,
    WindowKey,
)

__all__ = [
    # Limiter
    "FixedWindowRateLimiter",
    "RateLimitResult",
    "hash_session",
    # Policies
    "FALLBACK_POLICY",
    "RoutePolicy",
    "RoutePolicyTable",
    "build_policy_table",
    # Store protocol + errors
    "AtomicIncrementUnavailable",
    "RateLimitStore",
    "StoreUnavailable",
    "UnconfiguredRateLimitStore",
    "WindowConflict",
    "WindowKey",
]
