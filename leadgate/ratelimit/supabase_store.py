"""SupabaseRateLimitStore — async Supabase (PostgREST) fixed-window counter store.

All methods are async with a 5-second timeout (asyncio.wait_for).
Unlike an audit sink, this store does NOT swallow failures: every I/O error
surfaces as StoreUnavailable so the limiter can record a fail-open decision.

Architecture:
  - Single AsyncClient created in initialize()
  - increment() calls the increment_rate_limit() SQL function (one round trip)
  - Missing SQL function (42883 / PGRST202) → AtomicIncrementUnavailable
  - Unique violation (23505) on insert → WindowConflict
  - The table and SQL functions live in migrations/001_rate_limits.sql

Environment:
  SUPABASE_URL (or VITE_SUPABASE_URL) — required for selection in factory.py
  SUPABASE_SERVICE_ROLE_KEY           — required (service role key, not anon key)
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Optional

from postgrest.exceptions import APIError
from supabase import AsyncClient, create_async_client

from leadgate.constants import RATE_LIMIT_TABLE, STORE_TIMEOUT_S
from leadgate.ratelimit.protocol import (
    AtomicIncrementUnavailable,
    StoreUnavailable,
    WindowConflict,
    WindowKey,
)
from leadgate.utils.logger import get_logger

logger = get_logger(__name__)

# ─── PostgreSQL / PostgREST error codes ───────────────────────────────────────

_UNDEFINED_FUNCTION = "42883"
_FUNCTION_NOT_FOUND = "PGRST202"  # PostgREST schema cache miss
_UNIQUE_VIOLATION = "23505"

_MISSING_FUNCTION_CODES = frozenset({_UNDEFINED_FUNCTION, _FUNCTION_NOT_FOUND})

_INCREMENT_FN = "increment_rate_limit"
_CLEANUP_FN = "cleanup_old_rate_limits"


def _scalar(data: Any) -> Optional[int]:
    """Unwrap an RPC scalar reply: 3, [3], [{"increment_rate_limit": 3}]."""
    if isinstance(data, list):
        if not data:
            return None
        data = data[0]
    if isinstance(data, dict):
        if not data:
            return None
        data = next(iter(data.values()))
    if isinstance(data, bool) or data is None:
        return None
    try:
        return int(data)
    except (TypeError, ValueError):
        return None


# ─── SupabaseRateLimitStore ───────────────────────────────────────────────────


class SupabaseRateLimitStore:
    """Async Supabase rate-limit store.

    Usage:
        store = SupabaseRateLimitStore(url="https://...", key="service-role-key")
        await store.initialize()
        count = await store.increment(key)
        await store.close()
    """

    def __init__(
        self,
        url: str,
        key: str,
        table_name: str = RATE_LIMIT_TABLE,
        timeout_s: float = STORE_TIMEOUT_S,
        client: Optional[AsyncClient] = None,
    ) -> None:
        self._url = url
        self._key = key
        self._table_name = table_name
        self._timeout_s = timeout_s
        self._client: Optional[AsyncClient] = client

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Create the async Supabase client.

        A failed connection is logged and leaves the client unset; every
        subsequent counter operation then raises StoreUnavailable.
        """
        if self._client is not None:
            return
        try:
            self._client = await asyncio.wait_for(
                create_async_client(self._url, self._key),
                timeout=self._timeout_s,
            )
            logger.info(
                "supabase_rate_limit_store_initialized",
                table=self._table_name,
                timeout_s=self._timeout_s,
            )
        except Exception as exc:
            logger.error(
                "supabase_rate_limit_store_init_failed",
                error_type=type(exc).__name__,
            )
            self._client = None

    async def close(self) -> None:
        """Drop the client reference (PostgREST HTTP calls are stateless)."""
        self._client = None
        logger.debug("supabase_rate_limit_store_closed")

    # ── Internals ─────────────────────────────────────────────────────────────

    def _require_client(self) -> AsyncClient:
        if self._client is None:
            raise StoreUnavailable("supabase client is not initialized")
        return self._client

    async def _run(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        """Await a PostgREST call under the timeout, mapping transport failures.

        APIError is re-raised untouched so callers can branch on `.code`.
        """
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout_s)
        except APIError:
            raise
        except asyncio.TimeoutError as exc:
            raise StoreUnavailable(f"{operation} timed out after {self._timeout_s}s") from exc
        except Exception as exc:
            raise StoreUnavailable(f"{operation} failed: {type(exc).__name__}") from exc

    def _rows(self) -> Any:
        return self._require_client().table(self._table_name)

    # ── Atomic path ───────────────────────────────────────────────────────────

    async def increment(self, key: WindowKey) -> int:
        """Create-or-increment via the increment_rate_limit() SQL function."""
        client = self._require_client()
        params = {
            "p_session_hash": key.caller_identity,
            "p_route_key": key.route_key,
            "p_window_start": key.window_start_iso,
        }
        try:
            response = await self._run("increment", client.rpc(_INCREMENT_FN, params).execute())
        except APIError as exc:
            if exc.code in _MISSING_FUNCTION_CODES:
                raise AtomicIncrementUnavailable(f"{_INCREMENT_FN}() is not installed") from exc
            raise StoreUnavailable(f"increment failed: code={exc.code}") from exc

        count = _scalar(response.data)
        if count is None:
            raise StoreUnavailable("increment returned no count")
        return count

    # ── Optimistic fallback path ──────────────────────────────────────────────

    async def fetch_count(self, key: WindowKey) -> Optional[int]:
        query = (
            self._rows()
            .select("request_count")
            .eq("session_hash", key.caller_identity)
            .eq("route_key", key.route_key)
            .eq("window_start", key.window_start_iso)
            .limit(1)
        )
        try:
            response = await self._run("fetch_count", query.execute())
        except APIError as exc:
            raise StoreUnavailable(f"fetch_count failed: code={exc.code}") from exc

        rows = response.data or []
        if not rows:
            return None
        return int(rows[0]["request_count"])

    async def compare_and_set(self, key: WindowKey, expected: int, new: int) -> bool:
        query = (
            self._rows()
            .update({
                "request_count": new,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            })
            .eq("session_hash", key.caller_identity)
            .eq("route_key", key.route_key)
            .eq("window_start", key.window_start_iso)
            .eq("request_count", expected)
        )
        try:
            response = await self._run("compare_and_set", query.execute())
        except APIError as exc:
            raise StoreUnavailable(f"compare_and_set failed: code={exc.code}") from exc
        return bool(response.data)

    async def insert_first(self, key: WindowKey) -> None:
        payload = {
            "session_hash": key.caller_identity,
            "route_key": key.route_key,
            "window_start": key.window_start_iso,
            "request_count": 1,
        }
        try:
            await self._run("insert_first", self._rows().insert(payload).execute())
        except APIError as exc:
            if exc.code == _UNIQUE_VIOLATION:
                raise WindowConflict(key.route_key) from exc
            raise StoreUnavailable(f"insert_first failed: code={exc.code}") from exc

    # ── Maintenance ───────────────────────────────────────────────────────────

    async def prune_expired(self, retention_hours: int) -> int:
        """Run cleanup_old_rate_limits(); fall back to a direct DELETE when absent."""
        client = self._require_client()
        try:
            response = await self._run(
                "prune",
                client.rpc(_CLEANUP_FN, {"retention_hours": retention_hours}).execute(),
            )
            deleted = _scalar(response.data) or 0
        except APIError as exc:
            if exc.code not in _MISSING_FUNCTION_CODES:
                raise StoreUnavailable(f"prune failed: code={exc.code}") from exc
            logger.warning("rate_limit_cleanup_function_missing", code=exc.code)
            deleted = await self._delete_before(retention_hours)

        if deleted > 0:
            logger.info(
                "rate_limit_prune_complete",
                deleted_count=deleted,
                retention_hours=retention_hours,
            )
        return deleted

    async def _delete_before(self, retention_hours: int) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(hours=retention_hours)
        try:
            response = await self._run(
                "prune",
                self._rows().delete().lt("window_start", cutoff.isoformat()).execute(),
            )
        except APIError as exc:
            raise StoreUnavailable(f"prune failed: code={exc.code}") from exc
        return len(response.data or [])

    async def health_check(self) -> bool:
        """Returns True if a 1-row SELECT on the rate_limits table succeeds. Never raises."""
        if self._client is None:
            return False
        try:
            await asyncio.wait_for(
                self._client.table(self._table_name).select("id").limit(1).execute(),
                timeout=self._timeout_s,
            )
            return True
        except Exception as exc:
            logger.error(
                "supabase_rate_limit_health_check_failed",
                error_type=type(exc).__name__,
            )
            return False
