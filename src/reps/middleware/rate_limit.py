"""Rate limiting middleware — Redis-based per-minute window.

Learn: Uses a per-minute counter stored in Redis.
Each IP gets a counter key like "reps:rl:{ip}:{bucket}:{minute}".
Sign-in endpoints get a stricter limit (10/min): they send email,
mint device codes, or redeem tokens, so they are what an attacker
would hammer.

Gracefully skips rate limiting if Redis is unavailable (e.g., in tests).
"""

import time
from typing import Optional

import structlog
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from reps.redis_pool import get_redis

logger = structlog.get_logger()

AUTH_PATHS = (
    "/api/v1/auth/magic-link",
    "/api/v1/auth/verify",
    "/api/v1/auth/device/initiate",
)


def is_auth_path(path: str) -> bool:
    return path.startswith(AUTH_PATHS)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Redis-based rate limiting per IP per minute."""

    def __init__(self, app, default_rpm: int = 100, auth_rpm: int = 10):
        super().__init__(app)
        self.default_rpm = default_rpm
        self.auth_rpm = auth_rpm

    async def dispatch(self, request: Request, call_next) -> Response:
        is_auth = is_auth_path(request.url.path)
        rpm = self.auth_rpm if is_auth else self.default_rpm

        count = await self._hit(request, "auth" if is_auth else "api")
        if count is None:
            return await call_next(request)

        if count > rpm:
            logger.warning("rate_limit.exceeded", path=request.url.path, limit=rpm)
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Try again later."},
                headers={"Retry-After": "60"},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(rpm)
        response.headers["X-RateLimit-Remaining"] = str(max(0, rpm - count))
        return response

    async def _hit(self, request: Request, bucket: str) -> Optional[int]:
        """Count this request. None means "could not count, let it through"."""
        try:
            redis = get_redis()
        except RuntimeError:
            return None

        client_ip = request.client.host if request.client else "unknown"
        window = int(time.time() // 60)
        key = f"reps:rl:{client_ip}:{bucket}:{window}"

        try:
            count = await redis.incr(key)
            if count == 1:
                await redis.expire(key, 120)  # 2-min TTL for safety
        except RedisError as e:
            logger.warning("rate_limit.redis_error", error=str(e))
            return None
        return count
