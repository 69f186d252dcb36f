"""Redis connection helpers."""

from __future__ import annotations

from typing import Any

import redis.asyncio as aioredis

from statcrawl.main.config import Settings, get_settings


def build_redis_pool_kwargs(
    settings: Settings | None = None,
    *,
    decode_responses: bool,
) -> dict[str, Any]:
    """Build keyword arguments for redis.asyncio connection pools."""
    resolved_settings = settings or get_settings()
    kwargs: dict[str, Any] = {
        "decode_responses": decode_responses,
        "socket_connect_timeout": resolved_settings.redis_conn_timeout,
        "retry_on_timeout": resolved_settings.redis_retry_on_timeout,
    }

    if resolved_settings.redis_db is not None:
        kwargs["db"] = resolved_settings.redis_db

    return kwargs


def create_redis_client(settings: Settings | None = None) -> aioredis.Redis:
    """Create a redis.asyncio client with string responses."""
    resolved_settings = settings or get_settings()
    redis_url = f"redis://{resolved_settings.redis_host}:{resolved_settings.redis_port}"
    pool = aioredis.ConnectionPool.from_url(
        redis_url, **build_redis_pool_kwargs(resolved_settings, decode_responses=True)
    )
    return aioredis.Redis(connection_pool=pool)
