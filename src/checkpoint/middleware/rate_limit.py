"""Redis sliding-window rate limiting per scanner device.

Scanners send ``X-Scanner-Id``; other clients are keyed by IP. Requests pass
through unthrottled while Redis is not initialized (tests, CLI).
"""

import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from checkpoint.middleware.request_id import SCANNER_ID_HEADER, clean_id
from checkpoint.redis_client import get_redis, namespaced

LIMIT_HEADER = "X-RateLimit-Limit"
REMAINING_HEADER = "X-RateLimit-Remaining"

_EXEMPT_PATHS = frozenset({"/health", "/ready", "/version"})


def client_key(request: Request) -> str:
    scanner_id = clean_id(request.headers.get(SCANNER_ID_HEADER))
    if scanner_id:
        return f"scanner:{scanner_id}"
    return f"ip:{request.client.host if request.client else 'unknown'}"


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: Any, requests_per_window: int = 300, window_seconds: int = 60) -> None:  # noqa: ANN401
        super().__init__(app)
        self.requests_per_window = requests_per_window
        self.window_seconds = window_seconds

    async def _hit(self, key: str) -> int:
        """Record one request and return how many fall inside the window."""
        redis = get_redis()
        now = time.time()
        rate_key = namespaced("ratelimit", key)
        pipe = redis.pipeline()
        pipe.zremrangebyscore(rate_key, 0, now - self.window_seconds)
        pipe.zadd(rate_key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
        pipe.zcard(rate_key)
        pipe.expire(rate_key, self.window_seconds + 1)
        results: list[Any] = await pipe.execute()
        return int(results[2])

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in _EXEMPT_PATHS:
            return await call_next(request)

        try:
            current_count = await self._hit(client_key(request))
        except RuntimeError:
            # Redis not initialized
            return await call_next(request)

        if current_count > self.requests_per_window:
            return JSONResponse(
                status_code=429,
                content={"success": False, "kind": "rate_limited", "detail": "Rate limit exceeded. Try again later."},
                headers={
                    "Retry-After": str(self.window_seconds),
                    REMAINING_HEADER: "0",
                    LIMIT_HEADER: str(self.requests_per_window),
                },
            )

        response = await call_next(request)
        response.headers[REMAINING_HEADER] = str(max(0, self.requests_per_window - current_count))
        response.headers[LIMIT_HEADER] = str(self.requests_per_window)
        return response
