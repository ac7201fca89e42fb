"""Tests for the distributed rate limiter and its middleware."""

import asyncio

import pytest
from fastapi import FastAPI, Request
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError

from app.middleware.rate_limit import RateLimiter, RateLimitMiddleware, request_identity


def make_request(headers=None, client=("10.0.0.1", 5000), user_id=None):
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/tasks",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
        "state": {},
    }
    request = Request(scope)
    if user_id:
        request.state.user_id = user_id
    return request


class TestRequestIdentity:
    def test_authenticated_user(self):
        request = make_request(user_id="42")
        assert request_identity(request) == "user:42"

    def test_forwarded_header_is_ignored(self):
        request = make_request(headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1"})
        assert request_identity(request) == "10.0.0.1"

    def test_client_address(self):
        assert request_identity(make_request()) == "10.0.0.1"

    def test_unknown_sentinel(self):
        assert request_identity(make_request(client=None)) == "unknown"


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_request_over_limit_is_rejected(self, store):
        limiter = RateLimiter(store, limit=3, window_seconds=60)
        decisions = [await limiter.hit("user:1") for _ in range(4)]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert [d.remaining for d in decisions] == [2, 1, 0, 0]
        assert decisions[-1].retry_after == 60

    @pytest.mark.asyncio
    async def test_counter_restarts_after_window(self, store, redis):
        limiter = RateLimiter(store, limit=2, window_seconds=1)
        for _ in range(3):
            await limiter.hit("user:1")
        assert (await limiter.hit("user:1")).allowed is False

        await asyncio.sleep(1.1)

        decision = await limiter.hit("user:1")
        assert decision.allowed is True
        assert int(await redis.get("throttle:user:1")) == 1

    @pytest.mark.asyncio
    async def test_identities_are_counted_separately(self, store):
        limiter = RateLimiter(store, limit=1, window_seconds=60)
        assert (await limiter.hit("user:1")).allowed
        assert (await limiter.hit("user:2")).allowed
        assert not (await limiter.hit("user:1")).allowed


def build_app(store, settings):
    app = FastAPI()
    app.add_middleware(RateLimitMiddleware, store_provider=lambda: store, settings=settings)

    @app.get("/tasks")
    async def tasks():
        return {"ok": True}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


@pytest.fixture
def limited_settings(settings):
    settings.rate_limit_max_requests = 2
    settings.rate_limit_window_seconds = 60
    return settings


async def send_requests(app, path, count):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        return [await c.get(path) for _ in range(count)]


class TestRateLimitMiddleware:
    @pytest.mark.asyncio
    async def test_throttled_response_headers(self, store, limited_settings):
        responses = await send_requests(build_app(store, limited_settings), "/tasks", 3)

        assert [r.status_code for r in responses] == [200, 200, 429]
        assert responses[0].headers["X-RateLimit-Limit"] == "2"
        assert responses[0].headers["X-RateLimit-Remaining"] == "1"

        throttled = responses[2]
        assert throttled.headers["X-RateLimit-Limit"] == "2"
        assert throttled.headers["X-RateLimit-Remaining"] == "0"
        assert throttled.headers["Retry-After"] == "60"
        assert throttled.json()["retry_after"] == 60

    @pytest.mark.asyncio
    async def test_rotating_forwarded_header_is_still_limited(self, store, limited_settings):
        transport = ASGITransport(app=build_app(store, limited_settings))
        async with AsyncClient(transport=transport, base_url="http://test") as c:
            responses = [
                await c.get("/tasks", headers={"X-Forwarded-For": f"198.51.100.{i}"})
                for i in range(10)
            ]

        assert [r.status_code for r in responses] == [200, 200] + [429] * 8

    @pytest.mark.asyncio
    async def test_health_is_exempt(self, store, limited_settings):
        responses = await send_requests(build_app(store, limited_settings), "/health", 5)
        assert all(r.status_code == 200 for r in responses)

    @pytest.fixture
    def broken_store(self, store, monkeypatch):
        async def fail(*args, **kwargs):
            raise RedisConnectionError("redis down")

        monkeypatch.setattr(store, "increment_with_ttl", fail)
        return store

    @pytest.mark.asyncio
    async def test_store_failure_fails_open(self, broken_store, limited_settings):
        limited_settings.rate_limit_fail_open = True
        responses = await send_requests(build_app(broken_store, limited_settings), "/tasks", 3)
        assert all(r.status_code == 200 for r in responses)

    @pytest.mark.asyncio
    async def test_store_failure_fails_closed(self, broken_store, limited_settings):
        limited_settings.rate_limit_fail_open = False
        responses = await send_requests(build_app(broken_store, limited_settings), "/tasks", 1)
        assert responses[0].status_code == 503

