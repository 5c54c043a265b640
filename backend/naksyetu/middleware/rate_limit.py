"""Rate limiting middleware for the NaksYetu API.

Uses Redis (fixed window counter with INCR + EXPIRE) when REDIS_URL is
configured so limits hold across app instances, and an in-memory sliding
window otherwise (development, tests).
"""
import logging
import os
import time
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger('request')


class RedisRateLimit(BaseHTTPMiddleware):
    """Per-client-IP request limiter.

    Config via environment variables:
    - REDIS_URL (e.g. redis://localhost:6379/0)
    - RATE_LIMIT_MAX_REQUESTS
    - RATE_LIMIT_WINDOW
    """
    def __init__(self, app, max_requests: int = 200, window_sec: int = 60, redis_url: Optional[str] = None):
        super().__init__(app)
        self.max_requests = int(os.getenv('RATE_LIMIT_MAX_REQUESTS', str(max_requests)))
        self.window = int(os.getenv('RATE_LIMIT_WINDOW', str(window_sec)))
        self.redis_url = redis_url or os.getenv('REDIS_URL')
        self._redis = None
        self._in_memory_clients: dict[str, list[float]] = {}

    async def _get_redis(self):
        if self._redis is not None:
            return self._redis
        if not self.redis_url:
            return None
        try:
            client = aioredis.from_url(self.redis_url, decode_responses=True)
            await client.ping()
        except RedisError as exc:
            logger.warning('ratelimit.redis_unavailable error=%s', exc)
            return None
        self._redis = client
        return self._redis

    def _client_ip(self, request: Request) -> str:
        xff = request.headers.get('x-forwarded-for')
        if xff:
            return xff.split(',')[0].strip()
        client = getattr(request, 'client', None)
        return client.host if client else 'unknown'

    def _limited(self) -> JSONResponse:
        return JSONResponse({"detail": "Rate limit exceeded"}, status_code=429)

    async def dispatch(self, request: Request, call_next):
        client_ip = self._client_ip(request)

        redis_client = await self._get_redis()
        if redis_client:
            key = f"rl:{client_ip}:{int(time.time() // self.window)}"
            try:
                current = await redis_client.incr(key)
                if current == 1:
                    await redis_client.expire(key, self.window)
            except RedisError as exc:
                logger.warning('ratelimit.redis_error error=%s', exc)
            else:
                if int(current) > self.max_requests:
                    logger.info('ratelimit.exceeded ip=%s backend=redis', client_ip)
                    return self._limited()
                return await call_next(request)

        now = time.time()
        arr = [t for t in self._in_memory_clients.get(client_ip, []) if t > now - self.window]
        arr.append(now)
        self._in_memory_clients[client_ip] = arr
        if len(arr) > self.max_requests:
            logger.info('ratelimit.exceeded ip=%s backend=memory', client_ip)
            return self._limited()

        return await call_next(request)


__all__ = ["RedisRateLimit"]
