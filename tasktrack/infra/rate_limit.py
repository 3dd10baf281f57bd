from __future__ import annotations

import os
from functools import lru_cache

import structlog
from redis import Redis
from redis.exceptions import RedisError

from tasktrack.domain.errors import ErrorCode, RateLimitedError

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
AUTH_RATE_LIMIT = int(os.getenv("AUTH_RATE_LIMIT", "20"))
AUTH_RATE_WINDOW_SEC = int(os.getenv("AUTH_RATE_WINDOW_SEC", "900"))

logger = structlog.get_logger(__name__)


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    return Redis.from_url(REDIS_URL, decode_responses=True, socket_connect_timeout=1)


def check_redis_ready() -> bool:
    try:
        return bool(get_redis().ping())
    except Exception:
        return False


def enforce_auth_rate_limit(scope: str, client_key: str) -> None:
    """Fixed-window counter per ``scope`` and client; a Redis outage fails open."""
    if AUTH_RATE_LIMIT <= 0:
        return
    key = f"ratelimit:{scope}:{client_key}"
    try:
        redis = get_redis()
        hits = int(redis.incr(key))
        if hits == 1:
            redis.expire(key, AUTH_RATE_WINDOW_SEC)
    except RedisError as exc:
        logger.warning("rate_limiter_unavailable", scope=scope, error=str(exc))
        return
    if hits > AUTH_RATE_LIMIT:
        raise RateLimitedError(
            ErrorCode.RATE_LIMITED,
            "Too many attempts, please try again later",
        )
