"""Integration tests for the per-session rate-limit guard on lead routes.

Scenario under test (route "generate", 20 requests / 3600 s):
  - requests 1..20 from one session → 200 with X-RateLimit-Remaining 19..0
  - request 21 → 429 with Retry-After in [1, 3600] and a details block
  - sessionless, unauthenticated and RATE_LIMIT_DISABLED requests never touch the store
  - a failing store fails open
"""

from __future__ import annotations

from unittest.mock import AsyncMock

from http_helpers import T0, client_for, make_config, session_cookie

from leadgate.ratelimit.limiter import hash_session
from leadgate.ratelimit.protocol import StoreUnavailable, UnconfiguredRateLimitStore, WindowKey


def _spy_store() -> AsyncMock:
    store = AsyncMock()
    store.increment = AsyncMock(return_value=1)
    return store


class TestQuotaSequence:
    async def test_twenty_allowed_then_429(self, build_app, sqlite_store) -> None:
        app = build_app()
        cookie = session_cookie(app)

        async with client_for(app) as client:
            responses = [
                await client.post("/api/leads/generate", headers=cookie) for _ in range(21)
            ]

        allowed, denied = responses[:20], responses[20]
        assert [r.status_code for r in allowed] == [200] * 20
        assert [int(r.headers["x-ratelimit-remaining"]) for r in allowed] == list(range(19, -1, -1))
        assert all(r.headers["x-ratelimit-limit"] == "20" for r in allowed)
        assert allowed[0].headers["x-ratelimit-reset"] == str(int(T0) + 3600)

        assert denied.status_code == 429
        retry_after = int(denied.headers["retry-after"])
        assert 1 <= retry_after <= 3600
        assert retry_after == 3500
        body = denied.json()
        assert body["ok"] is False
        assert body["error"]["code"] == "rate_limited"
        assert body["error"]["message"] == "Rate limit exceeded. Try again in 3500 seconds."
        assert body["error"]["details"] == {
            "limit": 20,
            "remaining": 0,
            "retryAfterSeconds": 3500,
            "resetAt": "2023-11-14T23:00:00.000Z",
        }

    async def test_store_holds_hashed_identity_only(self, build_app, sqlite_store) -> None:
        app = build_app()
        cookie = session_cookie(app)
        token = cookie["cookie"].split("=", 1)[1]

        async with client_for(app) as client:
            await client.post("/api/leads/generate", headers=cookie)

        key = WindowKey.from_epoch_ms(hash_session(token), "generate", int(T0 * 1000))
        assert await sqlite_store.fetch_count(key) == 1
        raw_key = WindowKey.from_epoch_ms(token, "generate", int(T0 * 1000))
        assert await sqlite_store.fetch_count(raw_key) is None

    async def test_routes_have_separate_quotas(self, build_app) -> None:
        app = build_app()
        cookie = session_cookie(app)

        async with client_for(app) as client:
            await client.post("/api/leads/generate", headers=cookie)
            status = await client.get("/api/leads/status", headers=cookie)

        assert status.headers["x-ratelimit-limit"] == "120"
        assert status.headers["x-ratelimit-remaining"] == "119"


class TestGuardSkips:
    async def test_unauthenticated_request_is_rejected_before_counting(self, build_app) -> None:
        store = _spy_store()
        app = build_app(store=store)

        async with client_for(app) as client:
            response = await client.post("/api/leads/generate")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"
        store.increment.assert_not_awaited()

    async def test_sessionless_request_skips_the_limiter(self, build_app) -> None:
        store = _spy_store()
        app = build_app(config=make_config(auth_disabled_for_tests=True), store=store)

        async with client_for(app) as client:
            response = await client.post("/api/leads/generate")

        assert response.status_code == 200
        assert "x-ratelimit-limit" not in response.headers
        store.increment.assert_not_awaited()
        store.fetch_count.assert_not_awaited()

    async def test_rate_limit_disabled_skips_the_limiter(self, build_app) -> None:
        store = _spy_store()
        app = build_app(config=make_config(rate_limit_disabled=True), store=store)

        async with client_for(app) as client:
            response = await client.post("/api/leads/generate", headers=session_cookie(app))

        assert response.status_code == 200
        assert "x-ratelimit-limit" not in response.headers
        store.increment.assert_not_awaited()


class TestFailOpen:
    async def test_unavailable_store_allows_with_full_quota(self, build_app) -> None:
        store = AsyncMock()
        store.increment = AsyncMock(side_effect=StoreUnavailable("down"))
        app = build_app(store=store)

        async with client_for(app) as client:
            response = await client.post("/api/leads/generate", headers=session_cookie(app))

        assert response.status_code == 200
        assert response.headers["x-ratelimit-remaining"] == "20"

    async def test_unconfigured_store_allows(self, build_app) -> None:
        app = build_app(store=UnconfiguredRateLimitStore(reason="test"))
        cookie = session_cookie(app)

        async with client_for(app) as client:
            responses = [
                await client.post("/api/leads/generate", headers=cookie) for _ in range(25)
            ]

        assert all(r.status_code == 200 for r in responses)
