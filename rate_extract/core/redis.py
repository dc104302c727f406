"""
Redis client factory for the stores and metrics.

Clients share one ``ConnectionPool`` per process. Celery's prefork
workers inherit the parent's module state on fork, so the pool is
rebuilt whenever the current PID differs from the one that
created it; sockets are never shared across processes.
"""

from __future__ import annotations

import os

import redis

from rate_extract.core.config import get_settings

_pool: redis.ConnectionPool | None = None
_pool_pid: int | None = None


def get_redis_pool() -> redis.ConnectionPool:
    """Return this process's connection pool, creating it on first use."""
    global _pool, _pool_pid
    pid = os.getpid()
    if _pool is None or _pool_pid != pid:
        settings = get_settings()
        _pool = redis.ConnectionPool.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
            socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT,
            health_check_interval=30,
        )
        _pool_pid = pid
    return _pool


def get_redis_client() -> redis.Redis:
    """Short-lived client on the shared pool; callers ``close()`` it."""
    return redis.Redis(connection_pool=get_redis_pool())


def reset_redis_pool() -> None:
    """Drop the cached pool so the next client reads fresh settings."""
    global _pool, _pool_pid
    if _pool is not None:
        _pool.disconnect()
    _pool = None
    _pool_pid = None
