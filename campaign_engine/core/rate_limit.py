"""Inbound request rate limiting for public endpoints (webhooks)."""

import logging
import os

from slowapi import Limiter
from slowapi.util import get_remote_address

from campaign_engine.core.redis_client import get_redis_url, redis_status

logger = logging.getLogger(__name__)

IS_TESTING = os.getenv("TESTING", "").lower() in ("1", "true", "yes")


def _storage_uri() -> str:
    """Share Redis with the outbound token buckets when it answers, else keep counters in memory."""
    if IS_TESTING or redis_status() != "ok":
        return "memory://"
    return get_redis_url()


limiter = Limiter(key_func=get_remote_address, storage_uri=_storage_uri())
