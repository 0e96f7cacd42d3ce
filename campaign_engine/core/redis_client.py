"""Shared Redis connection for token buckets, inbound limits and health checks."""

from __future__ import annotations

import logging

from campaign_engine.core.config import settings

logger = logging.getLogger(__name__)

REDIS_DISABLED_URL = "memory://"

_client = None


def get_redis_url() -> str | None:
    """Configured Redis URL, or None when Redis is off (empty or memory://)."""
    url = (settings.REDIS_URL or "").strip()
    if not url or url.lower() == REDIS_DISABLED_URL:
        return None
    return url


def get_sync_redis_client():
    """
    Pooled client shared by every bucket in the process.

    Returns None when Redis is disabled; callers fall back to the database.
    """
    url = get_redis_url()
    if not url:
        return None

    global _client
    if _client is None:
        import redis

        pool = redis.ConnectionPool.from_url(
            url,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
            health_check_interval=30,
            retry_on_timeout=True,
        )
        _client = redis.Redis(connection_pool=pool)
    return _client


def redis_status() -> str:
    """``disabled``, ``ok`` or ``unavailable``."""
    client = get_sync_redis_client()
    if client is None:
        return "disabled"
    try:
        client.ping()
    except Exception as exc:
        logger.warning("Redis ping failed: %s", exc)
        return "unavailable"
    return "ok"
