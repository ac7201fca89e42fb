import logging
import math
from typing import Callable, NamedTuple

from redis.asyncio import RedisError
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from app.cache.store import KeyValueStore
from app.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

RATE_LIMIT_PREFIX = "throttle:"


class RateLimitDecision(NamedTuple):
    allowed: bool
    limit: int
    remaining: int
    retry_after: int  # seconds until the window resets


def request_identity(request: Request) -> str:
    """
    Authenticated user id if present, else the peer address, else a sentinel.

    X-Forwarded-For is not read here: clients control it. Behind a proxy,
    run uvicorn with --proxy-headers and --forwarded-allow-ips so the
    trusted hop is already in ``request.client``.
    """
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"

    if request.client and request.client.host:
        return request.client.host
    return "unknown"


class RateLimiter:
    def __init__(
        self,
        store: KeyValueStore,
        limit: int,
        window_seconds: int,
        fail_open: bool = True,
    ):
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self.fail_open = fail_open

    async def hit(self, identity: str) -> RateLimitDecision:
        """Count one request for the identity. Store errors propagate."""
        count, remaining_ms = await self.store.increment_with_ttl(
            f"{RATE_LIMIT_PREFIX}{identity}", self.window_seconds * 1000
        )
        retry_after = max(math.ceil(remaining_ms / 1000), 1)
        if count > self.limit:
            return RateLimitDecision(False, self.limit, 0, retry_after)
        return RateLimitDecision(True, self.limit, self.limit - count, retry_after)


class RateLimitMiddleware:
    """
    Rejects callers that exceed the request budget for the current window.

    Throttled responses are 429 with X-RateLimit-Limit, X-RateLimit-Remaining
    and Retry-After. When Redis is unreachable the request is either let
    through or answered with 503, depending on ``rate_limit_fail_open``.
    """

    EXEMPT_PREFIXES = (
        "/health",
        "/docs",
        "/openapi",
        "/redoc",
    )

    def __init__(
        self,
        app: ASGIApp,
        store_provider: Callable[[], KeyValueStore],
        settings: Settings | None = None,
        key_func: Callable[[Request], str] = request_identity,
    ):
        self.app = app
        self.store_provider = store_provider
        self.settings = settings or get_settings()
        self.key_func = key_func

    def _limiter(self) -> RateLimiter:
        return RateLimiter(
            self.store_provider(),
            limit=self.settings.rate_limit_max_requests,
            window_seconds=self.settings.rate_limit_window_seconds,
            fail_open=self.settings.rate_limit_fail_open,
        )

    def _should_skip(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.EXEMPT_PREFIXES)

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        if self._should_skip(request.url.path):
            await self.app(scope, receive, send)
            return

        limiter = self._limiter()
        identity = self.key_func(request)
        try:
            decision = await limiter.hit(identity)
        except RedisError as e:
            if limiter.fail_open:
                logger.warning(f"Rate limiter unavailable, allowing request from {identity}: {e}")
                await self.app(scope, receive, send)
                return
            logger.error(f"Rate limiter unavailable, rejecting request from {identity}: {e}")
            response = JSONResponse(
                status_code=503,
                content={"detail": "Rate limiter unavailable. Please try again later."},
            )
            await response(scope, receive, send)
            return

        if not decision.allowed:
            logger.info(f"Rate limit exceeded for {identity}")
            response = JSONResponse(
                status_code=429,
                content={
                    "detail": "Rate limit exceeded. Please try again later.",
                    "retry_after": decision.retry_after,
                },
                headers={
                    "X-RateLimit-Limit": str(decision.limit),
                    "X-RateLimit-Remaining": "0",
                    "Retry-After": str(decision.retry_after),
                },
            )
            await response(scope, receive, send)
            return

        async def send_with_headers(message: Message):
            if message["type"] == "http.response.start":
                headers = list(message.get("headers", []))
                headers.extend(
                    [
                        (b"x-ratelimit-limit", str(decision.limit).encode()),
                        (b"x-ratelimit-remaining", str(decision.remaining).encode()),
                    ]
                )
                message = {**message, "headers": headers}
            await send(message)

        await self.app(scope, receive, send_with_headers)
