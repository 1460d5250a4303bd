"""
Redis-backed sliding window rate limiter middleware.

Counts requests per client IP per minute. Resuming a stream by run ID is
exempt so a client reconnecting after a dropped connection is never locked
out of a run it is already watching.
"""

import re
import time
import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

import redis.asyncio as aioredis

from tubelens.config import settings

logger = logging.getLogger(__name__)

EXEMPT_PATHS = frozenset({"/api/health", "/metrics"})
_RESUME_PATH_RE = re.compile(r"/run_[0-9a-f]{32}$")


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app):
        super().__init__(app)
        self._redis: aioredis.Redis | None = None
        self.limit = settings.rate_limit_per_minute
        self.window = 60  # seconds

    async def _get_redis(self) -> aioredis.Redis | None:
        if self._redis is None:
            try:
                self._redis = aioredis.from_url(
                    settings.redis_url, decode_responses=True
                )
                await self._redis.ping()
            except Exception as exc:
                logger.warning("Rate limiter: Redis unavailable (%s), passing through", exc)
                self._redis = None
        return self._redis

    def _is_exempt(self, request: Request) -> bool:
        path = request.url.path
        return (
            self.limit <= 0
            or path in EXEMPT_PATHS
            or (request.method == "GET" and _RESUME_PATH_RE.search(path) is not None)
        )

    async def dispatch(self, request: Request, call_next):
        if self._is_exempt(request):
            return await call_next(request)

        r = await self._get_redis()
        if r is None:
            # Redis down: fail open
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        now = time.time()
        key = f"tubelens:ratelimit:{client_ip}"

        try:
            pipe = r.pipeline()
            pipe.zremrangebyscore(key, 0, now - self.window)
            pipe.zadd(key, {str(now): now})
            pipe.zcard(key)
            pipe.expire(key, self.window)
            results = await pipe.execute()
            request_count = results[2]
        except Exception as exc:
            logger.warning("Rate limiter Redis error: %s", exc)
            return await call_next(request)

        if request_count > self.limit:
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests. Please try again later."},
                headers={"Retry-After": str(self.window)},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.limit - request_count))
        return response
