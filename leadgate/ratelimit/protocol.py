"""RateLimitStore Protocol, WindowKey and store error types.

Layout:
    protocol.py        — RateLimitStore Protocol + WindowKey + errors + UnconfiguredRateLimitStore
    sqlite_store.py    — LocalSQLiteRateLimitStore (aiosqlite, default)
    supabase_store.py  — SupabaseRateLimitStore (PostgREST RPC + table API)
    factory.py         — create_rate_limit_store() backend selection

Error contract (every implementation):
  - StoreUnavailable            — I/O failure, timeout, missing client, unexpected reply
  - AtomicIncrementUnavailable  — increment() cannot run server-side; caller falls back
  - WindowConflict              — insert_first() lost the race to create the row

Stores never decide allow/deny. The limiter turns StoreUnavailable into a
fail-open decision; credential checks turn it into a deny.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol, runtime_checkable

from leadgate.utils.logger import get_logger

logger = get_logger(__name__)


# ─── Errors ───────────────────────────────────────────────────────────────────


class StoreUnavailable(Exception):
    """The backing store could not be reached or answered unexpectedly."""


class AtomicIncrementUnavailable(Exception):
    """The store has no server-side create-or-increment operation installed."""


class WindowConflict(Exception):
    """A concurrent request created the window row first (uniqueness violation)."""


# ─── WindowKey ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class WindowKey:
    """Unique key of one rate-limit window record.

    At most one row exists per (caller_identity, route_key, window_start).
    caller_identity is always the hashed session token, never the token itself.
    """

    caller_identity: str
    route_key: str
    window_start: datetime

    @classmethod
    def from_epoch_ms(cls, caller_identity: str, route_key: str, window_start_ms: int) -> "WindowKey":
        return cls(
            caller_identity=caller_identity,
            route_key=route_key,
            window_start=datetime.fromtimestamp(window_start_ms / 1000, tz=timezone.utc),
        )

    @property
    def window_start_iso(self) -> str:
        """Canonical ISO 8601 form stored in the window_start column."""
        return self.window_start.astimezone(timezone.utc).isoformat()


# ─── RateLimitStore Protocol ──────────────────────────────────────────────────


@runtime_checkable
class RateLimitStore(Protocol):
    """Pluggable fixed-window counter store.

    Implementations: LocalSQLiteRateLimitStore (default), SupabaseRateLimitStore.
    Selection via create_rate_limit_store() (ratelimit/factory.py).
    """

    async def initialize(self) -> None:
        """Open connections / clients. Called once from the app lifespan."""
        ...

    async def increment(self, key: WindowKey) -> int:
        """Create-or-increment the row in ONE server-side operation.

        Returns the post-increment request_count.

        Raises:
            AtomicIncrementUnavailable: no server-side operation available.
            StoreUnavailable: on any I/O failure.
        """
        ...

    async def fetch_count(self, key: WindowKey) -> Optional[int]:
        """Return the current request_count, or None when the row is absent."""
        ...

    async def compare_and_set(self, key: WindowKey, expected: int, new: int) -> bool:
        """Set request_count to `new` only if it still equals `expected`.

        Returns False when another writer changed the row first.
        """
        ...

    async def insert_first(self, key: WindowKey) -> None:
        """Insert the window row with request_count = 1.

        Raises:
            WindowConflict: the row already exists.
            StoreUnavailable: on any other failure.
        """
        ...

    async def prune_expired(self, retention_hours: int) -> int:
        """Delete windows that started more than retention_hours ago. Returns count."""
        ...

    async def health_check(self) -> bool:
        """Returns True if the store is operational. Must not raise."""
        ...

    async def close(self) -> None:
        """Release connections. Called during graceful shutdown."""
        ...


# ─── UnconfiguredRateLimitStore ───────────────────────────────────────────────


class UnconfiguredRateLimitStore:
    """Store used when the configured backend cannot be constructed safely.

    Every counter operation raises StoreUnavailable, so the limiter fails open
    and credential checks backed by this store fail closed. `reason` must be
    secret-free; it is surfaced in logs and exception messages.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason

    async def initialize(self) -> None:
        logger.error("rate_limit_store_unconfigured", reason=self.reason)

    async def increment(self, key: WindowKey) -> int:
        raise StoreUnavailable(self.reason)

    async def fetch_count(self, key: WindowKey) -> Optional[int]:
        raise StoreUnavailable(self.reason)

    async def compare_and_set(self, key: WindowKey, expected: int, new: int) -> bool:
        raise StoreUnavailable(self.reason)

    async def insert_first(self, key: WindowKey) -> None:
        raise StoreUnavailable(self.reason)

    async def prune_expired(self, retention_hours: int) -> int:
        raise StoreUnavailable(self.reason)

    async def health_check(self) -> bool:
        return False

    async def close(self) -> None:
        return None


assert isinstance(UnconfiguredRateLimitStore("import-time check"), RateLimitStore), (
    "UnconfiguredRateLimitStore does not satisfy RateLimitStore protocol — implementation error"
)
