"""HTTP helpers with retry/backoff for provider integrations."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

DEFAULT_RETRY_STATUSES = {429, 500, 502, 503, 504}


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential delay for ``attempt`` (0-based) with up to 50% jitter."""
    delay = min(max_delay, base_delay * (2**attempt))
    if delay:
        delay = delay + random.uniform(0, delay / 2)
    return delay


async def request_with_retries(
    request_fn: Callable[[], Awaitable[httpx.Response]],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 4.0,
    retry_statuses: set[int] | None = None,
    label: str = "http",
) -> httpx.Response:
    """
    Execute an HTTP request with exponential backoff retries.

    Transport errors and retryable statuses are retried up to
    ``max_attempts``; the last response (or transport error) is returned
    or raised to the caller, which maps it to a ProviderError.
    """
    statuses = retry_statuses or DEFAULT_RETRY_STATUSES

    for attempt in range(max_attempts):
        try:
            response = await request_fn()
        except httpx.RequestError as exc:
            if attempt >= max_attempts - 1:
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning("%s request failed, retrying", label, exc_info=exc)
            if delay:
                await asyncio.sleep(delay)
            continue

        if response.status_code in statuses and attempt < max_attempts - 1:
            delay = backoff_delay(attempt, base_delay, max_delay)
            retry_after = response.headers.get("Retry-After", "")
            if retry_after.isdigit():
                delay = min(max(delay, float(retry_after)), max_delay) if max_delay else 0
            logger.warning("%s request returned %s, retrying", label, response.status_code)
            if delay:
                await asyncio.sleep(delay)
            continue

        return response

    return response
