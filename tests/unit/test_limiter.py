"""Unit tests for leadgate.ratelimit.limiter.FixedWindowRateLimiter.

Coverage:
  - Window arithmetic and allow/deny decisions (mock store)
  - Optimistic fallback: insert race, lost compare-and-set, bounded retries
  - Fail-open on StoreUnavailable, unexpected exceptions and retry exhaustion
  - End-to-end against LocalSQLiteRateLimitStore (atomic and fallback paths)
  - Concurrent requests on the same key are never lost or double-counted
"""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock

import pytest

from leadgate.ratelimit import (
    AtomicIncrementUnavailable,
    FixedWindowRateLimiter,
    RateLimitResult,
    RoutePolicy,
    RoutePolicyTable,
    StoreUnavailable,
    WindowConflict,
    WindowKey,
    build_policy_table,
    hash_session,
)
from leadgate.ratelimit.sqlite_store import LocalSQLiteRateLimitStore

# 2023-11-14T22:00:00Z, aligned to an hour boundary.
T0 = 1_699_999_200.0
CALLER = hash_session("session-token-for-tests")


class FrozenClock:
    """Manually advanced clock (epoch seconds)."""

    def __init__(self, now: float = T0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _policies(limit: int = 20, window_seconds: int = 3600) -> RoutePolicyTable:
    return RoutePolicyTable({"generate": RoutePolicy(limit, window_seconds)})


def _mock_store(**overrides: Any) -> AsyncMock:
    store = AsyncMock()
    store.increment = AsyncMock(return_value=1)
    store.fetch_count = AsyncMock(return_value=None)
    store.compare_and_set = AsyncMock(return_value=True)
    store.insert_first = AsyncMock(return_value=None)
    for name, value in overrides.items():
        setattr(store, name, value)
    return store


# ─── hash_session / RateLimitResult ───────────────────────────────────────────


class TestHashSession:
    def test_is_32_lowercase_hex_characters(self) -> None:
        digest = hash_session("any-token")
        assert len(digest) == 32
        assert all(c in "0123456789abcdef" for c in digest)

    def test_is_deterministic(self) -> None:
        assert hash_session("token-a") == hash_session("token-a")

    def test_distinct_tokens_hash_differently(self) -> None:
        assert hash_session("token-a") != hash_session("token-b")

    def test_known_prefix_of_sha256(self) -> None:
        # sha256("abc") = ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad
        assert hash_session("abc") == "ba7816bf8f01cfea414140de5dae2223"


class TestRateLimitResult:
    def test_reset_epoch_seconds(self) -> None:
        result = RateLimitResult(allowed=True, remaining=1, limit=2, reset_at=1_700_000_000_500)
        assert result.reset_epoch_seconds == 1_700_000_000

    def test_reset_at_iso(self) -> None:
        result = RateLimitResult(allowed=True, remaining=1, limit=2, reset_at=1_700_000_000_000)
        assert result.reset_at_iso == "2023-11-14T22:13:20.000Z"


# ─── Decisions (mock store) ───────────────────────────────────────────────────


class TestDecisions:
    async def test_first_request_is_allowed(self) -> None:
        store = _mock_store(increment=AsyncMock(return_value=1))
        limiter = FixedWindowRateLimiter(store, _policies(), clock=FrozenClock(T0 + 100))

        result = await limiter.check(CALLER, "generate")

        assert result.allowed is True
        assert result.remaining == 19
        assert result.limit == 20
        assert result.retry_after_seconds is None
        assert result.fail_open is False

    async def test_window_is_epoch_aligned(self) -> None:
        store = _mock_store()
        limiter = FixedWindowRateLimiter(store, _policies(), clock=FrozenClock(T0 + 1234.5))

        result = await limiter.check(CALLER, "generate")

        key: WindowKey = store.increment.await_args.args[0]
        assert key.caller_identity == CALLER
        assert key.route_key == "generate"
        assert key.window_start.timestamp() == T0
        assert result.reset_at == int((T0 + 3600) * 1000)

    async def test_nth_request_is_allowed_with_zero_remaining(self) -> None:
        store = _mock_store(increment=AsyncMock(return_value=20))
        limiter = FixedWindowRateLimiter(store, _policies(), clock=FrozenClock(T0))

        result = await limiter.check(CALLER, "generate")

        assert result.allowed is True
        assert result.remaining == 0

    async def test_request_over_limit_is_denied(self) -> None:
        store = _mock_store(increment=AsyncMock(return_value=21))
        limiter = FixedWindowRateLimiter(store, _policies(), clock=FrozenClock(T0 + 3550))

        result = await limiter.check(CALLER, "generate")

        assert result.allowed is False
        assert result.remaining == 0
        assert result.retry_after_seconds == 50

    async def test_retry_after_rounds_up(self) -> None:
        store = _mock_store(increment=AsyncMock(return_value=21))
        limiter = FixedWindowRateLimiter(store, _policies(), clock=FrozenClock(T0 + 3599.2))

        result = await limiter.check(CALLER, "generate")

        assert result.retry_after_seconds == 1

    async def test_retry_after_is_full_window_at_window_start(self) -> None:
        store = _mock_store(increment=AsyncMock(return_value=21))
        limiter = FixedWindowRateLimiter(store, _policies(), clock=FrozenClock(T0))

        result = await limiter.check(CALLER, "generate")

        assert result.retry_after_seconds == 3600

    async def test_unknown_route_uses_fallback_policy(self) -> None:
        store = _mock_store(increment=AsyncMock(return_value=1))
        limiter = FixedWindowRateLimiter(store, build_policy_table(), clock=FrozenClock(T0))

        result = await limiter.check(CALLER, "export")

        assert result.limit == 60
        assert result.remaining == 59


# ─── Optimistic fallback (mock store) ─────────────────────────────────────────


class TestOptimisticFallback:
    async def test_absent_row_is_inserted_with_count_one(self) -> None:
        store = _mock_store(
            increment=AsyncMock(side_effect=AtomicIncrementUnavailable("missing")),
            fetch_count=AsyncMock(return_value=None),
        )
        limiter = FixedWindowRateLimiter(store, _policies(), clock=FrozenClock(T0))

        result = await limiter.check(CALLER, "generate")

        assert result.remaining == 19
        store.insert_first.assert_awaited_once()
        store.compare_and_set.assert_not_awaited()

    async def test_existing_row_is_incremented_by_compare_and_set(self) -> None:
        store = _mock_store(
            increment=AsyncMock(side_effect=AtomicIncrementUnavailable("missing")),
            fetch_count=AsyncMock(return_value=4),
        )
        limiter = FixedWindowRateLimiter(store, _policies(), clock=FrozenClock(T0))

        result = await limiter.check(CALLER, "generate")

        assert result.remaining == 15
        key = store.compare_and_set.await_args.args[0]
        assert store.compare_and_set.await_args.args[1:] == (4, 5)
        assert key.route_key == "generate"

    async def test_insert_conflict_retries_from_the_read(self) -> None:
        store = _mock_store(
            increment=AsyncMock(side_effect=AtomicIncrementUnavailable("missing")),
            fetch_count=AsyncMock(side_effect=[None, 1]),
            insert_first=AsyncMock(side_effect=WindowConflict("generate")),
        )
        limiter = FixedWindowRateLimiter(store, _policies(), clock=FrozenClock(T0))

        result = await limiter.check(CALLER, "generate")

        assert result.allowed is True
        assert result.remaining == 18
        assert store.fetch_count.await_count == 2
        assert store.compare_and_set.await_args.args[1:] == (1, 2)

    async def test_lost_compare_and_set_retries_with_fresh_count(self) -> None:
        store = _mock_store(
            increment=AsyncMock(side_effect=AtomicIncrementUnavailable("missing")),
            fetch_count=AsyncMock(side_effect=[3, 4]),
            compare_and_set=AsyncMock(side_effect=[False, True]),
        )
        limiter = FixedWindowRateLimiter(store, _policies(), clock=FrozenClock(T0))

        result = await limiter.check(CALLER, "generate")

        assert result.remaining == 15
        assert store.compare_and_set.await_args_list[0].args[1:] == (3, 4)
        assert store.compare_and_set.await_args_list[1].args[1:] == (4, 5)

    async def test_retry_budget_exhaustion_fails_open(self) -> None:
        store = _mock_store(
            increment=AsyncMock(side_effect=AtomicIncrementUnavailable("missing")),
            fetch_count=AsyncMock(return_value=7),
            compare_and_set=AsyncMock(return_value=False),
        )
        limiter = FixedWindowRateLimiter(
            store, _policies(), max_conflict_retries=3, clock=FrozenClock(T0)
        )

        result = await limiter.check(CALLER, "generate")

        assert result.allowed is True
        assert result.fail_open is True
        assert result.remaining == 20
        assert store.compare_and_set.await_count == 4

    async def test_backoff_between_retries_only(self, monkeypatch: pytest.MonkeyPatch) -> None:
        sleep = AsyncMock()
        monkeypatch.setattr("leadgate.ratelimit.limiter.asyncio.sleep", sleep)
        store = _mock_store(
            increment=AsyncMock(side_effect=AtomicIncrementUnavailable("missing")),
            fetch_count=AsyncMock(return_value=7),
            compare_and_set=AsyncMock(return_value=False),
        )
        limiter = FixedWindowRateLimiter(
            store, _policies(), max_conflict_retries=3, clock=FrozenClock(T0)
        )

        await limiter.check(CALLER, "generate")

        assert sleep.await_count == 3
        delays = [call.args[0] for call in sleep.await_args_list]
        assert all(0 <= delay <= 0.05 for delay in delays)

    async def test_no_backoff_when_first_round_wins(self, monkeypatch: pytest.MonkeyPatch) -> None:
        sleep = AsyncMock()
        monkeypatch.setattr("leadgate.ratelimit.limiter.asyncio.sleep", sleep)
        store = _mock_store(
            increment=AsyncMock(side_effect=AtomicIncrementUnavailable("missing")),
            fetch_count=AsyncMock(return_value=2),
        )
        limiter = FixedWindowRateLimiter(store, _policies(), clock=FrozenClock(T0))

        await limiter.check(CALLER, "generate")

        sleep.assert_not_awaited()

    async def test_zero_retries_means_a_single_attempt(self) -> None:
        store = _mock_store(
            increment=AsyncMock(side_effect=AtomicIncrementUnavailable("missing")),
            fetch_count=AsyncMock(return_value=None),
            insert_first=AsyncMock(side_effect=WindowConflict("generate")),
        )
        limiter = FixedWindowRateLimiter(
            store, _policies(), max_conflict_retries=0, clock=FrozenClock(T0)
        )

        result = await limiter.check(CALLER, "generate")

        assert result.fail_open is True
        assert store.insert_first.await_count == 1


# ─── Fail-open ────────────────────────────────────────────────────────────────


class TestFailOpen:
    async def test_store_unavailable_fails_open(self) -> None:
        store = _mock_store(increment=AsyncMock(side_effect=StoreUnavailable("down")))
        limiter = FixedWindowRateLimiter(store, _policies(), clock=FrozenClock(T0 + 10))

        result = await limiter.check(CALLER, "generate")

        assert result.allowed is True
        assert result.remaining == 20
        assert result.limit == 20
        assert result.fail_open is True
        assert result.reset_at == int((T0 + 3600) * 1000)

    async def test_unexpected_exception_fails_open(self) -> None:
        store = _mock_store(increment=AsyncMock(side_effect=RuntimeError("boom")))
        limiter = FixedWindowRateLimiter(store, _policies(), clock=FrozenClock(T0))

        result = await limiter.check(CALLER, "generate")

        assert result.allowed is True
        assert result.fail_open is True

    async def test_fallback_store_failure_fails_open(self) -> None:
        store = _mock_store(
            increment=AsyncMock(side_effect=AtomicIncrementUnavailable("missing")),
            fetch_count=AsyncMock(side_effect=StoreUnavailable("down")),
        )
        limiter = FixedWindowRateLimiter(store, _policies(), clock=FrozenClock(T0))

        result = await limiter.check(CALLER, "generate")

        assert result.allowed is True
        assert result.fail_open is True

    async def test_timeout_fails_open(self) -> None:
        store = _mock_store(increment=AsyncMock(side_effect=asyncio.TimeoutError()))
        limiter = FixedWindowRateLimiter(store, _policies(), clock=FrozenClock(T0))

        result = await limiter.check(CALLER, "generate")

        assert result.fail_open is True


# ─── End-to-end with LocalSQLiteRateLimitStore ────────────────────────────────


class TestWithSQLiteStore:
    @pytest.fixture(params=["atomic", "fallback"])
    async def store(
        self,
        request: pytest.FixtureRequest,
        tmp_path: Any,
    ) -> Any:
        store = LocalSQLiteRateLimitStore(
            db_path=str(tmp_path / f"{request.param}.db"),
            atomic_increment=request.param == "atomic",
        )
        await store.initialize()
        yield store
        await store.close()

    async def test_quota_sequence(self, store: LocalSQLiteRateLimitStore) -> None:
        """Requests 1..N are allowed with remaining N-1..0; N+1 is denied."""
        limiter = FixedWindowRateLimiter(store, _policies(limit=5), clock=FrozenClock(T0 + 60))

        remaining = []
        for _ in range(5):
            result = await limiter.check(CALLER, "generate")
            assert result.allowed is True
            remaining.append(result.remaining)

        denied = await limiter.check(CALLER, "generate")

        assert remaining == [4, 3, 2, 1, 0]
        assert denied.allowed is False
        assert 0 < denied.retry_after_seconds <= 3600

    async def test_new_window_resets_the_quota(self, store: LocalSQLiteRateLimitStore) -> None:
        clock = FrozenClock(T0 + 3599)
        limiter = FixedWindowRateLimiter(store, _policies(limit=1), clock=clock)

        assert (await limiter.check(CALLER, "generate")).allowed is True
        assert (await limiter.check(CALLER, "generate")).allowed is False

        clock.advance(2)
        result = await limiter.check(CALLER, "generate")

        assert result.allowed is True
        assert result.remaining == 0

    async def test_routes_are_counted_independently(self, store: LocalSQLiteRateLimitStore) -> None:
        policies = RoutePolicyTable({
            "generate": RoutePolicy(1, 3600),
            "status": RoutePolicy(1, 3600),
        })
        limiter = FixedWindowRateLimiter(store, policies, clock=FrozenClock(T0))

        assert (await limiter.check(CALLER, "generate")).allowed is True
        assert (await limiter.check(CALLER, "status")).allowed is True
        assert (await limiter.check(CALLER, "generate")).allowed is False

    async def test_callers_are_counted_independently(self, store: LocalSQLiteRateLimitStore) -> None:
        limiter = FixedWindowRateLimiter(store, _policies(limit=1), clock=FrozenClock(T0))

        assert (await limiter.check(hash_session("a"), "generate")).allowed is True
        assert (await limiter.check(hash_session("b"), "generate")).allowed is True

    async def test_concurrent_requests_are_all_counted(
        self, store: LocalSQLiteRateLimitStore
    ) -> None:
        limiter = FixedWindowRateLimiter(
            store,
            _policies(limit=20),
            max_conflict_retries=25,
            clock=FrozenClock(T0),
        )

        results = await asyncio.gather(*(limiter.check(CALLER, "generate") for _ in range(10)))

        assert all(r.allowed and not r.fail_open for r in results)
        assert sorted(r.remaining for r in results) == list(range(10, 20))
        key = WindowKey.from_epoch_ms(CALLER, "generate", int(T0 * 1000))
        assert await store.fetch_count(key) == 10

    async def test_concurrent_burst_within_default_budget(
        self, store: LocalSQLiteRateLimitStore
    ) -> None:
        """30 simultaneous requests on one key with default settings: none lost, none fail open."""
        limiter = FixedWindowRateLimiter(store, _policies(limit=30), clock=FrozenClock(T0))

        results = await asyncio.gather(*(limiter.check(CALLER, "generate") for _ in range(30)))

        assert not any(r.fail_open for r in results)
        assert sorted(r.remaining for r in results) == list(range(30))
        key = WindowKey.from_epoch_ms(CALLER, "generate", int(T0 * 1000))
        assert await store.fetch_count(key) == 30
