"""
Token-bucket rate limiting for outbound provider calls.

Bucket state lives in a shared store so every worker and API process spends
from the same budget:

- RedisBucketStore: refill + check + decrement in one Lua script.
- DatabaseBucketStore: SELECT ... FOR UPDATE on the rate_limit_buckets row.

Tokens refill in whole intervals: after each full ``interval_seconds``
the bucket gains ``refill_rate`` tokens, capped at ``capacity``.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from starlette.concurrency import run_in_threadpool

from campaign_engine.core.config import settings
from campaign_engine.core.errors import RateLimitExceeded, ValidationError
from campaign_engine.db.models import RateLimitBucket

logger = logging.getLogger(__name__)

REDIS_KEY_PREFIX = "ratelimit:bucket:"
BACKOFF_BASE_SECONDS = 0.1
BACKOFF_MAX_SECONDS = 5.0


@dataclass(frozen=True)
class BucketConfig:
    capacity: float
    refill_rate: float
    interval_seconds: float


@dataclass(frozen=True)
class AcquireResult:
    allowed: bool
    tokens: float
    retry_after: float = 0.0


def refill(tokens: float, last_refill: float, config: BucketConfig, now: float) -> tuple[float, float]:
    """Apply whole refill intervals elapsed since ``last_refill``."""
    tokens = min(tokens, config.capacity)
    if now <= last_refill:
        return tokens, last_refill
    intervals = math.floor((now - last_refill) / config.interval_seconds)
    if intervals <= 0:
        return tokens, last_refill
    tokens = min(config.capacity, tokens + intervals * config.refill_rate)
    return tokens, last_refill + intervals * config.interval_seconds


def seconds_until_available(
    tokens: float, last_refill: float, config: BucketConfig, cost: float, now: float
) -> float:
    missing = cost - tokens
    if missing <= 0:
        return 0.0
    intervals = math.ceil(missing / config.refill_rate)
    return max(0.0, last_refill + intervals * config.interval_seconds - now)


class BucketStore(Protocol):
    def try_acquire(
        self, service: str, config: BucketConfig, cost: float, now: float
    ) -> AcquireResult: ...


# =============================================================================
# Stores
# =============================================================================


class DatabaseBucketStore:
    """Buckets as rows; each acquisition locks its row for one short transaction."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def _lock_bucket(self, db, service: str, config: BucketConfig, now: float) -> RateLimitBucket:
        bucket = db.execute(
            select(RateLimitBucket).where(RateLimitBucket.service_name == service).with_for_update()
        ).scalar_one_or_none()
        if bucket is not None:
            return bucket
        try:
            with db.begin_nested():
                db.add(
                    RateLimitBucket(
                        service_name=service,
                        capacity=config.capacity,
                        tokens=config.capacity,
                        refill_rate=config.refill_rate,
                        refill_interval_seconds=config.interval_seconds,
                        last_refill=now,
                        version=0,
                    )
                )
        except IntegrityError:
            # Another process created it first
            pass
        return db.execute(
            select(RateLimitBucket).where(RateLimitBucket.service_name == service).with_for_update()
        ).scalar_one()

    def try_acquire(
        self, service: str, config: BucketConfig, cost: float, now: float
    ) -> AcquireResult:
        with self._session_factory() as db:
            bucket = self._lock_bucket(db, service, config, now)
            tokens, last_refill = refill(bucket.tokens, bucket.last_refill, config, now)
            allowed = tokens >= cost
            remaining = tokens - cost if allowed else tokens
            bucket.tokens = remaining
            bucket.last_refill = last_refill
            bucket.capacity = config.capacity
            bucket.refill_rate = config.refill_rate
            bucket.refill_interval_seconds = config.interval_seconds
            bucket.version = bucket.version + 1
            db.commit()

        if allowed:
            return AcquireResult(allowed=True, tokens=remaining)
        return AcquireResult(
            allowed=False,
            tokens=remaining,
            retry_after=seconds_until_available(remaining, last_refill, config, cost, now),
        )


_ACQUIRE_SCRIPT = """
local capacity = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local interval = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local now = tonumber(ARGV[5])
local ttl = tonumber(ARGV[6])

local state = redis.call('HMGET', KEYS[1], 'tokens', 'last_refill')
local tokens = tonumber(state[1])
local last_refill = tonumber(state[2])
if tokens == nil or last_refill == nil then
  tokens = capacity
  last_refill = now
end
if tokens > capacity then
  tokens = capacity
end
if now > last_refill then
  local intervals = math.floor((now - last_refill) / interval)
  if intervals > 0 then
    tokens = math.min(capacity, tokens + intervals * refill_rate)
    last_refill = last_refill + intervals * interval
  end
end

local allowed = 0
if tokens >= cost then
  tokens = tokens - cost
  allowed = 1
end
redis.call('HSET', KEYS[1], 'tokens', tostring(tokens), 'last_refill', tostring(last_refill))
redis.call('EXPIRE', KEYS[1], ttl)
return {allowed, tostring(tokens), tostring(last_refill)}
"""


class RedisBucketStore:
    """Buckets as Redis hashes; the Lua script runs atomically on the server."""

    def __init__(self, client):
        self._client = client
        self._script = client.register_script(_ACQUIRE_SCRIPT)

    def try_acquire(
        self, service: str, config: BucketConfig, cost: float, now: float
    ) -> AcquireResult:
        # Idle buckets expire once they would be full again anyway
        ttl = max(60, int(math.ceil(config.interval_seconds * (config.capacity / config.refill_rate + 1))))
        allowed, tokens, last_refill = self._script(
            keys=[f"{REDIS_KEY_PREFIX}{service}"],
            args=[config.capacity, config.refill_rate, config.interval_seconds, cost, repr(now), ttl],
        )
        tokens = float(tokens)
        last_refill = float(last_refill)
        if int(allowed) == 1:
            return AcquireResult(allowed=True, tokens=tokens)
        return AcquireResult(
            allowed=False,
            tokens=tokens,
            retry_after=seconds_until_available(tokens, last_refill, config, cost, now),
        )


# =============================================================================
# Limiter
# =============================================================================


class RateLimiter:
    """
    Admission control per external service.

    ``try_acquire`` rejects immediately; ``acquire`` blocks with backoff
    (provider calls always use ``acquire``).
    """

    def __init__(
        self,
        store: BucketStore,
        *,
        buckets: dict[str, dict[str, float]] | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self._buckets = settings.RATE_LIMIT_BUCKETS if buckets is None else buckets
        self._clock = clock
        self._sleep = sleep

    def config_for(self, service: str) -> BucketConfig:
        raw = self._buckets.get(service) or {}
        config = BucketConfig(
            capacity=float(raw.get("capacity", settings.RATE_LIMIT_DEFAULT_CAPACITY)),
            refill_rate=float(raw.get("refill_rate", settings.RATE_LIMIT_DEFAULT_REFILL_RATE)),
            interval_seconds=float(
                raw.get("interval_seconds", settings.RATE_LIMIT_DEFAULT_INTERVAL_SECONDS)
            ),
        )
        if config.capacity <= 0 or config.refill_rate <= 0 or config.interval_seconds <= 0:
            raise ValidationError(f"Invalid rate limit bucket for {service}")
        return config

    def check(self, service: str, cost: float = 1) -> AcquireResult:
        config = self.config_for(service)
        if cost <= 0:
            raise ValidationError("cost must be positive")
        if cost > config.capacity:
            raise ValidationError(
                f"cost {cost} exceeds capacity {config.capacity} for {service}"
            )
        return self.store.try_acquire(service, config, cost, self._clock())

    def try_acquire(self, service: str, cost: float = 1) -> bool:
        """Take ``cost`` tokens if available. Never waits."""
        return self.check(service, cost).allowed

    async def acquire(self, service: str, cost: float = 1, *, max_wait: float | None = None) -> None:
        """
        Wait until ``cost`` tokens are taken.

        Sleeps at least until the next refill, doubling the backoff between
        contended attempts. Raises RateLimitExceeded once ``max_wait`` seconds
        have passed.
        """
        limit = settings.RATE_LIMIT_MAX_WAIT_SECONDS if max_wait is None else max_wait
        started = self._clock()
        backoff = BACKOFF_BASE_SECONDS
        while True:
            # Store calls block on Redis or the database
            result = await run_in_threadpool(self.check, service, cost)
            if result.allowed:
                return
            waited = self._clock() - started
            remaining = limit - waited
            if remaining <= 0:
                raise RateLimitExceeded(service, retry_after=result.retry_after)
            delay = min(max(result.retry_after, backoff), remaining)
            logger.debug("Rate limited on %s, waiting %.2fs", service, delay)
            await self._sleep(delay)
            backoff = min(backoff * 2, BACKOFF_MAX_SECONDS)


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """Process-wide limiter over the shared store (Redis when configured)."""
    global _rate_limiter
    if _rate_limiter is None:
        from campaign_engine.core.redis_client import get_sync_redis_client
        from campaign_engine.db.session import SessionLocal

        client = get_sync_redis_client()
        if client is not None:
            store: BucketStore = RedisBucketStore(client)
        else:
            store = DatabaseBucketStore(SessionLocal)
        _rate_limiter = RateLimiter(store)
    return _rate_limiter
