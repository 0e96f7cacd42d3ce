"""Webhook signature helpers shared by provider implementations."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import time

DEFAULT_MAX_AGE_SECONDS = 300
DEFAULT_MAX_FUTURE_SKEW_SECONDS = 60


def compute_hmac_sha256(secret: str, payload: bytes | str) -> str:
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def _strip_prefix(signature: str) -> str:
    signature = signature.strip()
    if signature.lower().startswith("sha256="):
        return signature[7:]
    return signature


def verify_hmac_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Constant-time check of a hex HMAC-SHA256 over the raw body."""
    if not secret or not signature:
        return False
    expected = compute_hmac_sha256(secret, body)
    return hmac.compare_digest(
        expected.encode("utf-8"), _strip_prefix(signature).lower().encode("utf-8")
    )


def timestamp_within_window(
    raw_timestamp: str | None,
    *,
    max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
    max_future_skew_seconds: int = DEFAULT_MAX_FUTURE_SKEW_SECONDS,
    now: float | None = None,
) -> bool:
    """Reject stale or future-dated timestamps (epoch seconds or milliseconds)."""
    if not raw_timestamp:
        return False
    try:
        timestamp = float(raw_timestamp)
    except (TypeError, ValueError):
        return False
    if timestamp > 10_000_000_000:
        timestamp = timestamp / 1000
    current = time.time() if now is None else now
    age = current - timestamp
    if age > max_age_seconds:
        return False
    if -age > max_future_skew_seconds:
        return False
    return True


def verify_signed_request(
    body: bytes,
    signature: str | None,
    secret: str,
    *,
    timestamp: str | None = None,
    now: float | None = None,
) -> bool:
    """
    HMAC body check with an optional replay window.

    When the sender includes a timestamp header it must be fresh; senders
    that do not send one are checked on the body signature alone.
    """
    if timestamp is not None and not timestamp_within_window(timestamp, now=now):
        return False
    return verify_hmac_signature(body, signature, secret)


def verify_basic_auth(authorization: str | None, expected_credentials: str) -> bool:
    """Compare an ``Authorization: Basic ...`` header with ``user:password``."""
    if not authorization or not expected_credentials:
        return False
    scheme, _, encoded = authorization.partition(" ")
    if scheme.lower() != "basic" or not encoded:
        return False
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return False
    return hmac.compare_digest(decoded.encode("utf-8"), expected_credentials.encode("utf-8"))
