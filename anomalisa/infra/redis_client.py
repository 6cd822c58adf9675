from typing import Optional

import redis.asyncio as redis

from ..config import REDIS_URL, STORE_TIMEOUT_SECONDS


def create_redis_async(url: Optional[str] = None) -> redis.Redis:
    """
    New pooled client. Callers own it and close it; the app keeps one on
    app.state and the worker keeps one per process.
    """
    return redis.from_url(
        url or REDIS_URL,
        decode_responses=True,
        socket_timeout=STORE_TIMEOUT_SECONDS,
        socket_connect_timeout=STORE_TIMEOUT_SECONDS,
        health_check_interval=30,
    )
