"""Shared Redis connection utilities."""

from statcrawl.redis.connection import build_redis_pool_kwargs, create_redis_client

__all__ = ["build_redis_pool_kwargs", "create_redis_client"]
