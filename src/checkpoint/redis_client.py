"""Shared Redis pool for the scan rate limiter and the readiness probe.

The scheduler queue opens its own arq pool (see ``workers.queue``).
"""

import redis.asyncio as redis

KEY_PREFIX = "ckp"

_pool: redis.Redis | None = None


def namespaced(*parts: object) -> str:
    """Build a key under the service prefix: ``ckp:ratelimit:1.2.3.4``."""
    return ":".join([KEY_PREFIX, *(str(p) for p in parts)])


async def init_redis(url: str, max_connections: int = 20) -> None:
    global _pool  # noqa: PLW0603
    _pool = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=max_connections,
    )


async def close_redis() -> None:
    global _pool  # noqa: PLW0603
    if _pool is not None:
        await _pool.aclose()
        _pool = None


def get_redis() -> redis.Redis:
    """Return the pool; raises RuntimeError before ``init_redis``."""
    if _pool is None:
        msg = "Redis pool is not open"
        raise RuntimeError(msg)
    return _pool


async def redis_available() -> bool:
    """True if the pool exists and answers PING."""
    if _pool is None:
        return False
    try:
        return bool(await _pool.ping())
    except redis.RedisError:
        return False
