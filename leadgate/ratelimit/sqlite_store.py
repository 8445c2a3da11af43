"""LocalSQLiteRateLimitStore — aiosqlite-based fixed-window counter store.

Uses aiosqlite EXCLUSIVELY; the stdlib sqlite3 synchronous module is never
called on the request path.

Features:
  - WAL mode: PRAGMA journal_mode=WAL
  - Autocommit connection (isolation_level=None): every statement is its own
    transaction, so a failed INSERT never poisons the next statement
  - Schema version guard: PRAGMA user_version=1 — RuntimeError on mismatch
  - Long-lived connection: opened in initialize(), closed in close()
  - Atomic path: INSERT … ON CONFLICT DO UPDATE … RETURNING (SQLite >= 3.35)
  - Fallback path: SELECT / conditional UPDATE / INSERT with UNIQUE constraint
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Optional

import aiosqlite

from leadgate.constants import DEFAULT_RATE_LIMIT_DB_PATH
from leadgate.ratelimit.protocol import (
    AtomicIncrementUnavailable,
    StoreUnavailable,
    WindowConflict,
    WindowKey,
)
from leadgate.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Schema DDL ───────────────────────────────────────────────────────────────

_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS rate_limits (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    session_hash    TEXT NOT NULL,
    route_key       TEXT NOT NULL,
    window_start    TEXT NOT NULL,
    request_count   INTEGER NOT NULL DEFAULT 1,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    CONSTRAINT rate_limits_unique UNIQUE (session_hash, route_key, window_start)
);

CREATE INDEX IF NOT EXISTS idx_rate_limits_window_start
    ON rate_limits(window_start);
"""

_SCHEMA_VERSION = 1

# UPSERT … RETURNING landed in SQLite 3.35.0.
_MIN_ATOMIC_SQLITE_VERSION = (3, 35, 0)

_INCREMENT_SQL = """
INSERT INTO rate_limits
    (session_hash, route_key, window_start, request_count, created_at, updated_at)
VALUES (?, ?, ?, 1, ?, ?)
ON CONFLICT (session_hash, route_key, window_start)
DO UPDATE SET request_count = request_count + 1, updated_at = excluded.updated_at
RETURNING request_count
"""

_WHERE_KEY = "session_hash = ? AND route_key = ? AND window_start = ?"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _key_params(key: WindowKey) -> tuple[str, str, str]:
    return (key.caller_identity, key.route_key, key.window_start_iso)


# ─── LocalSQLiteRateLimitStore ────────────────────────────────────────────────


class LocalSQLiteRateLimitStore:
    """Async SQLite rate-limit store using aiosqlite exclusively.

    Default path: ~/.leadgate/rate_limits.db
    Override via: LEADGATE_RATE_LIMIT_DB_PATH or store.sqlite_path in config.yaml

    Usage:
        store = LocalSQLiteRateLimitStore(db_path="/tmp/rl.db")
        await store.initialize()
        count = await store.increment(key)
        await store.close()

    Set atomic_increment=False to force the optimistic fallback path (used for
    compatibility testing and on SQLite builds older than 3.35).
    """

    def __init__(
        self,
        db_path: str = DEFAULT_RATE_LIMIT_DB_PATH,
        atomic_increment: bool = True,
    ) -> None:
        self._db_path: str = os.path.expanduser(db_path)
        self._db: Optional[aiosqlite.Connection] = None
        self._atomic_supported = (
            atomic_increment and aiosqlite.sqlite_version_info >= _MIN_ATOMIC_SQLITE_VERSION
        )

    @property
    def atomic_supported(self) -> bool:
        return self._atomic_supported

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Open the connection, enable WAL mode, and create/verify schema.

        Raises:
            RuntimeError: If PRAGMA user_version is neither 0 nor 1.
                          The FastAPI lifespan lets this propagate and refuses startup.
        """
        parent_dir = os.path.dirname(self._db_path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)

        self._db = await aiosqlite.connect(self._db_path, isolation_level=None)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("PRAGMA journal_mode=WAL;")

        cursor = await self._db.execute("PRAGMA user_version;")
        row = await cursor.fetchone()
        current_version: int = row[0] if row else 0

        if current_version == 0:
            await self._db.executescript(_CREATE_SCHEMA_SQL)
            await self._db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION};")
            logger.info(
                "rate_limit_db_schema_created",
                db_path=self._db_path,
                schema_version=_SCHEMA_VERSION,
                atomic_increment=self._atomic_supported,
            )
        elif current_version == _SCHEMA_VERSION:
            logger.info(
                "rate_limit_db_schema_ok",
                db_path=self._db_path,
                schema_version=current_version,
                atomic_increment=self._atomic_supported,
            )
        else:
            await self._db.close()
            self._db = None
            raise RuntimeError(
                f"Unsupported rate limit database schema version: {current_version}. "
                f"Delete {self._db_path} to reset (counters are disposable)."
            )

    async def close(self) -> None:
        """Close the aiosqlite connection gracefully."""
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.debug("rate_limit_db_closed", db_path=self._db_path)

    def _connection(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StoreUnavailable("rate limit database is not initialized")
        return self._db

    # ── Atomic path ───────────────────────────────────────────────────────────

    async def increment(self, key: WindowKey) -> int:
        """Create-or-increment in a single UPSERT statement; returns the new count."""
        if not self._atomic_supported:
            raise AtomicIncrementUnavailable(
                f"SQLite {aiosqlite.sqlite_version} lacks UPSERT … RETURNING"
            )
        db = self._connection()
        now = _now_iso()
        try:
            rows = await db.execute_fetchall(_INCREMENT_SQL, (*_key_params(key), now, now))
        except aiosqlite.Error as exc:
            raise StoreUnavailable(f"increment failed: {type(exc).__name__}") from exc
        rows = list(rows)
        if not rows:
            raise StoreUnavailable("increment returned no row")
        return int(rows[0][0])

    # ── Optimistic fallback path ──────────────────────────────────────────────

    async def fetch_count(self, key: WindowKey) -> Optional[int]:
        db = self._connection()
        try:
            async with db.execute(
                f"SELECT request_count FROM rate_limits WHERE {_WHERE_KEY}",
                _key_params(key),
            ) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise StoreUnavailable(f"fetch_count failed: {type(exc).__name__}") from exc
        return int(row[0]) if row is not None else None

    async def compare_and_set(self, key: WindowKey, expected: int, new: int) -> bool:
        db = self._connection()
        try:
            cursor = await db.execute(
                "UPDATE rate_limits SET request_count = ?, updated_at = ? "
                f"WHERE {_WHERE_KEY} AND request_count = ?",
                (new, _now_iso(), *_key_params(key), expected),
            )
            updated = cursor.rowcount
            await cursor.close()
        except aiosqlite.Error as exc:
            raise StoreUnavailable(f"compare_and_set failed: {type(exc).__name__}") from exc
        return updated == 1

    async def insert_first(self, key: WindowKey) -> None:
        db = self._connection()
        now = _now_iso()
        try:
            await db.execute(
                "INSERT INTO rate_limits "
                "(session_hash, route_key, window_start, request_count, created_at, updated_at) "
                "VALUES (?, ?, ?, 1, ?, ?)",
                (*_key_params(key), now, now),
            )
        except aiosqlite.IntegrityError as exc:
            raise WindowConflict(key.route_key) from exc
        except aiosqlite.Error as exc:
            raise StoreUnavailable(f"insert_first failed: {type(exc).__name__}") from exc

    # ── Maintenance ───────────────────────────────────────────────────────────

    async def prune_expired(self, retention_hours: int) -> int:
        """DELETE windows whose window_start is older than now - retention_hours."""
        db = self._connection()
        cutoff = datetime.now(timezone.utc) - timedelta(hours=retention_hours)
        try:
            cursor = await db.execute(
                "DELETE FROM rate_limits WHERE window_start < ?",
                (cutoff.isoformat(),),
            )
            deleted = cursor.rowcount
            await cursor.close()
        except aiosqlite.Error as exc:
            raise StoreUnavailable(f"prune failed: {type(exc).__name__}") from exc

        if deleted > 0:
            logger.info(
                "rate_limit_prune_complete",
                deleted_count=deleted,
                retention_hours=retention_hours,
            )
        return deleted

    async def health_check(self) -> bool:
        """Returns True if SELECT 1 succeeds. Never raises."""
        if self._db is None:
            return False
        try:
            async with self._db.execute("SELECT 1") as cursor:
                row = await cursor.fetchone()
            return row is not None
        except aiosqlite.Error as exc:
            logger.error("rate_limit_db_health_check_failed", error=str(exc))
            return False
