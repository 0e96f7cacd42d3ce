"""Webhooks router - inbound provider delivery and engagement events."""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from campaign_engine.core.config import settings
from campaign_engine.core.deps import get_db, get_registry
from campaign_engine.core.errors import (
    ProviderConfigError,
    ValidationError,
    WebhookSignatureInvalid,
)
from campaign_engine.core.rate_limit import limiter
from campaign_engine.core.structured_logging import build_log_context
from campaign_engine.db.enums import Channel
from campaign_engine.schemas.campaign import WebhookIngestResponse
from campaign_engine.services import event_service
from campaign_engine.services.event_normalizer import normalize_batch
from campaign_engine.services.providers import ProviderRegistry, WebhookRequest

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/{channel}/{provider}", response_model=WebhookIngestResponse)
@limiter.limit(f"{settings.RATE_LIMIT_WEBHOOK}/minute")
async def receive_provider_webhook(
    channel: Channel,
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
    registry: ProviderRegistry = Depends(get_registry),
):
    """
    Receive a provider webhook.

    Security:
    - Validates payload size
    - Verifies the vendor signature before reading the payload

    Processing:
    - Accepts one event object or a list of them
    - Normalizes, then ingests each event (idempotent on provider_event_id)
    - Uncorrelated events are queued for retry instead of failing the delivery
    """
    # 1. Check payload size
    content_length = request.headers.get("content-length", "0")
    try:
        if int(content_length) > settings.WEBHOOK_MAX_PAYLOAD_BYTES:
            raise HTTPException(413, "Payload too large")
    except ValueError:
        pass

    # 2. Resolve provider (name comes from the URL, not the active selector)
    try:
        adapter = registry.get(channel, provider)
    except ProviderConfigError as exc:
        # Without a configured secret nothing can be verified
        logger.warning("Webhook for unconfigured provider %s: %s", provider, exc.message)
        raise WebhookSignatureInvalid(f"Provider {provider} is not configured") from None
    log_context = build_log_context(provider=adapter.name, channel=channel.value)

    # 3. Verify signature on the raw body
    body = await request.body()
    if len(body) > settings.WEBHOOK_MAX_PAYLOAD_BYTES:
        raise HTTPException(413, "Payload too large")
    webhook_request = WebhookRequest(
        body=body,
        headers=dict(request.headers),
        query_params=dict(request.query_params),
    )
    if not adapter.verify_webhook_signature(webhook_request, adapter.webhook_secret):
        logger.warning(
            "Webhook signature rejected",
            extra={
                **log_context,
                "security_event": "webhook_signature_invalid",
                "client": request.client.host if request.client else None,
            },
        )
        raise WebhookSignatureInvalid(f"Invalid {adapter.name} webhook signature")

    # 4. Parse payload
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Invalid JSON") from None
    items = data if isinstance(data, list) else [data]
    if not all(isinstance(item, dict) for item in items):
        raise ValidationError("Webhook payload must be an object or a list of objects")

    # 5. Extract vendor events
    raw_events = []
    positions: list[int] = []  # payload index of each raw event
    errors: list[dict] = []
    ignored = 0
    for index, item in enumerate(items):
        try:
            raw = adapter.parse_webhook_event(item)
        except ValidationError as exc:
            errors.append({"index": index, "error": exc.message})
            continue
        if raw is None:
            ignored += 1
        else:
            raw_events.append(raw)
            positions.append(index)

    # 6. Normalize and ingest
    events, normalize_errors = normalize_batch(raw_events, adapter.name, channel)
    errors.extend({**e, "index": positions[e["index"]]} for e in normalize_errors)
    errors.sort(key=lambda e: e["index"])
    counts = {
        event_service.INGEST_CREATED: 0,
        event_service.INGEST_DUPLICATE: 0,
        event_service.INGEST_ORPHANED: 0,
    }
    for event in events:
        result = event_service.ingest_event(db, event)
        counts[result.status] += 1
    db.commit()

    if errors and not events and not ignored:
        raise ValidationError(errors[0]["error"])

    logger.info(
        "Webhook processed: %s created, %s duplicates, %s queued",
        counts[event_service.INGEST_CREATED],
        counts[event_service.INGEST_DUPLICATE],
        counts[event_service.INGEST_ORPHANED],
        extra=log_context,
    )
    return WebhookIngestResponse(
        received=len(items),
        created=counts[event_service.INGEST_CREATED],
        duplicates=counts[event_service.INGEST_DUPLICATE],
        queued=counts[event_service.INGEST_ORPHANED],
        ignored=ignored,
        errors=errors,
    )
