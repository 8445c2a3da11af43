"""Fixed-window per-session rate limiter.

Each (caller identity, route) pair gets `limit` requests per epoch-aligned
window of `window_seconds`. Counting is delegated to a RateLimitStore:

  1. Atomic path   — store.increment(): one server-side create-or-increment.
  2. Fallback path — fetch_count → compare_and_set / insert_first, retried on
                     WindowConflict or a lost compare-and-set, at most
                     max_conflict_retries times with jittered backoff.

Any store failure (StoreUnavailable, timeout, unexpected exception, retry
exhaustion) produces an allowed result with remaining == limit and
fail_open=True. The limiter never raises to the request path.

Caller identity is always hash_session(token); raw tokens never reach the
store or the logs.
"""

from __future__ import annotations

import asyncio
import hashlib
import math
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from leadgate.constants import (
    CALLER_IDENTITY_HEX_LENGTH,
    CONFLICT_BACKOFF_BASE_S,
    CONFLICT_BACKOFF_CAP_S,
    DEFAULT_MAX_CONFLICT_RETRIES,
)
from leadgate.ratelimit.policy import RoutePolicy, RoutePolicyTable
from leadgate.ratelimit.protocol import (
    AtomicIncrementUnavailable,
    RateLimitStore,
    StoreUnavailable,
    WindowConflict,
    WindowKey,
)
from leadgate.utils.logger import get_logger

logger = get_logger(__name__)


def hash_session(token: str) -> str:
    """Derive the caller identity: first 32 hex chars of sha256(token)."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:CALLER_IDENTITY_HEX_LENGTH]


# ─── RateLimitResult ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one rate-limit check.

    reset_at is the window end in epoch milliseconds.
    retry_after_seconds is set only when allowed is False.
    fail_open is True when the store could not be consulted.
    """

    allowed: bool
    remaining: int
    limit: int
    reset_at: int
    retry_after_seconds: Optional[int] = None
    fail_open: bool = False

    @property
    def reset_epoch_seconds(self) -> int:
        return self.reset_at // 1000

    @property
    def reset_at_iso(self) -> str:
        dt = datetime.fromtimestamp(self.reset_at / 1000, tz=timezone.utc)
        return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ─── FixedWindowRateLimiter ───────────────────────────────────────────────────


class FixedWindowRateLimiter:
    """Checks and counts requests against per-route fixed-window quotas.

    Usage:
        limiter = FixedWindowRateLimiter(store, config.policies)
        result = await limiter.check(hash_session(token), "generate")
        if not result.allowed:
            ...  # 429 with result.retry_after_seconds
    """

    def __init__(
        self,
        store: RateLimitStore,
        policies: RoutePolicyTable,
        max_conflict_retries: int = DEFAULT_MAX_CONFLICT_RETRIES,
        clock: Callable[[], float] = time.time,
        conflict_backoff_s: float = CONFLICT_BACKOFF_BASE_S,
    ) -> None:
        self._store = store
        self._policies = policies
        self._max_conflict_retries = max_conflict_retries
        self._clock = clock
        self._conflict_backoff_s = conflict_backoff_s

    @property
    def policies(self) -> RoutePolicyTable:
        return self._policies

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def check(self, caller_identity: str, route_key: str) -> RateLimitResult:
        """Count one request for (caller_identity, route_key) and decide.

        Never raises. Store failures return an allowed, fail_open result.
        """
        policy = self._policies.resolve(route_key)
        now_ms = self._now_ms()
        window_start_ms = (now_ms // policy.window_ms) * policy.window_ms
        reset_at = window_start_ms + policy.window_ms
        key = WindowKey.from_epoch_ms(caller_identity, route_key, window_start_ms)

        count = await self._count_request(key)
        if count is None:
            return RateLimitResult(
                allowed=True,
                remaining=policy.limit,
                limit=policy.limit,
                reset_at=reset_at,
                fail_open=True,
            )
        return self._decide(route_key, policy, count, reset_at, now_ms)

    def _decide(
        self,
        route_key: str,
        policy: RoutePolicy,
        count: int,
        reset_at: int,
        now_ms: int,
    ) -> RateLimitResult:
        allowed = count <= policy.limit
        remaining = max(0, policy.limit - count)
        if allowed:
            return RateLimitResult(
                allowed=True,
                remaining=remaining,
                limit=policy.limit,
                reset_at=reset_at,
            )

        retry_after = math.ceil((reset_at - now_ms) / 1000)
        logger.warning(
            "rate_limit_exceeded",
            route_key=route_key,
            limit=policy.limit,
            current_count=count,
            retry_after_seconds=retry_after,
        )
        return RateLimitResult(
            allowed=False,
            remaining=remaining,
            limit=policy.limit,
            reset_at=reset_at,
            retry_after_seconds=retry_after,
        )

    # ── Counting ──────────────────────────────────────────────────────────────

    async def _count_request(self, key: WindowKey) -> Optional[int]:
        """Return the post-increment count, or None when the store failed."""
        try:
            try:
                return await self._store.increment(key)
            except AtomicIncrementUnavailable:
                logger.debug("rate_limit_atomic_unavailable", route_key=key.route_key)
            return await self._optimistic_increment(key)
        except StoreUnavailable as exc:
            logger.error(
                "rate_limit_store_unavailable",
                route_key=key.route_key,
                error=str(exc),
            )
        except Exception as exc:
            logger.error(
                "rate_limit_store_error",
                route_key=key.route_key,
                error_type=type(exc).__name__,
            )
        return None

    def _backoff_delay(self, attempt: int) -> float:
        """Full-jitter exponential backoff, capped at CONFLICT_BACKOFF_CAP_S."""
        if self._conflict_backoff_s <= 0:
            return 0.0
        ceiling = min(CONFLICT_BACKOFF_CAP_S, self._conflict_backoff_s * (2 ** attempt))
        return random.uniform(0, ceiling)

    async def _optimistic_increment(self, key: WindowKey) -> Optional[int]:
        """Read / conditional-write loop for stores without an atomic increment.

        A round is only lost when another request for the same key was counted
        in between, so every request eventually wins while the burst size stays
        within the retry budget. Returns None when the budget runs out.
        """
        for attempt in range(self._max_conflict_retries + 1):
            current = await self._store.fetch_count(key)
            if current is None:
                try:
                    await self._store.insert_first(key)
                    return 1
                except WindowConflict:
                    pass
            elif await self._store.compare_and_set(key, current, current + 1):
                return current + 1

            logger.debug("rate_limit_window_conflict", route_key=key.route_key, attempt=attempt)
            if attempt < self._max_conflict_retries:
                await asyncio.sleep(self._backoff_delay(attempt))

        logger.error(
            "rate_limit_conflict_retries_exhausted",
            route_key=key.route_key,
            max_conflict_retries=self._max_conflict_retries,
        )
        return None
