"""Redis connection used by the background job queues."""

from __future__ import annotations

import os
from functools import lru_cache

from dotenv import load_dotenv
from redis import Redis

load_dotenv()

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
QUEUE_PREFIX = os.getenv("QUEUE_PREFIX", "costops")


@lru_cache(maxsize=1)
def get_redis_connection() -> Redis:
    """Return the shared Redis connection (string responses)."""
    return Redis.from_url(REDIS_URL, decode_responses=True)


__all__ = ["get_redis_connection", "REDIS_URL", "QUEUE_PREFIX"]
