"""Postmark email provider."""

from __future__ import annotations

import logging
from typing import Any

from campaign_engine.core.errors import ValidationError
from campaign_engine.services.providers.base import (
    EmailMessage,
    EmailProvider,
    ProviderCapabilities,
    RawProviderEvent,
    SendResult,
    StatusResult,
    WebhookRequest,
    render_template,
)
from campaign_engine.services.providers.signatures import verify_basic_auth

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 500

# Timestamp field carried by each record type
_TIMESTAMP_FIELDS = {
    "Delivery": "DeliveredAt",
    "Bounce": "BouncedAt",
    "Open": "ReceivedAt",
    "Click": "ReceivedAt",
    "SpamComplaint": "BouncedAt",
    "SubscriptionChange": "ChangedAt",
}


class PostmarkEmailProvider(EmailProvider):
    """
    Transactional email through Postmark.

    Webhooks are authenticated with HTTP Basic credentials configured on the
    Postmark webhook URL; POSTMARK_WEBHOOK_SECRET holds ``user:password``.
    """

    name = "postmark"
    required_settings = (
        "POSTMARK_SERVER_TOKEN",
        "POSTMARK_WEBHOOK_SECRET",
        "POSTMARK_SENDER_EMAIL",
    )
    webhook_secret_setting = "POSTMARK_WEBHOOK_SECRET"
    base_url_setting = "POSTMARK_API_URL"

    def _headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "X-Postmark-Server-Token": self.config.POSTMARK_SERVER_TOKEN,
        }

    def _build_message(self, message: EmailMessage) -> dict[str, Any]:
        if not message.to_email:
            raise ValidationError("Postmark send requires a recipient email")
        payload: dict[str, Any] = {
            "From": message.from_email or self.config.POSTMARK_SENDER_EMAIL,
            "To": message.to_email,
            "Subject": render_template(message.subject, message.variables),
            "HtmlBody": render_template(message.html_body, message.variables),
            "MessageStream": self.config.POSTMARK_MESSAGE_STREAM,
            "TrackOpens": True,
            "TrackLinks": "HtmlAndText",
            # Postmark metadata values must be strings
            "Metadata": {k: str(v) for k, v in message.metadata.items() if v is not None},
        }
        if message.text_body:
            payload["TextBody"] = render_template(message.text_body, message.variables)
        if message.reply_to:
            payload["ReplyTo"] = message.reply_to
        return payload

    async def send(self, params: EmailMessage) -> SendResult:
        data = await self._request("POST", "/email", json=self._build_message(params))
        if data.get("ErrorCode", 0) != 0:
            return SendResult(
                provider=self.name, success=False, error=data.get("Message"), raw=data
            )
        return SendResult(
            provider=self.name, success=True, message_id=data.get("MessageID"), raw=data
        )

    async def send_batch(self, items: list[EmailMessage]) -> list[SendResult]:
        results: list[SendResult] = []
        for start in range(0, len(items), MAX_BATCH_SIZE):
            chunk = items[start : start + MAX_BATCH_SIZE]
            data = await self._request(
                "POST", "/email/batch", json=[self._build_message(m) for m in chunk]
            )
            for item in data or []:
                ok = item.get("ErrorCode", 0) == 0
                results.append(
                    SendResult(
                        provider=self.name,
                        success=ok,
                        message_id=item.get("MessageID") if ok else None,
                        error=None if ok else item.get("Message"),
                        raw=item,
                    )
                )
        return results

    async def get_status(self, id: str) -> StatusResult:
        data = await self._request("GET", f"/messages/outbound/{id}/details")
        return StatusResult(
            provider=self.name,
            id=id,
            status=str(data.get("Status", "unknown")).lower(),
            raw=data,
        )

    def verify_webhook_signature(self, request: WebhookRequest, secret: str) -> bool:
        return verify_basic_auth(request.header("authorization"), secret)

    def parse_webhook_event(self, payload: dict) -> RawProviderEvent | None:
        record_type = payload.get("RecordType")
        message_id = payload.get("MessageID")
        if not record_type or not message_id:
            raise ValidationError("Postmark webhook missing RecordType or MessageID")

        if record_type == "SubscriptionChange" and not payload.get("SuppressSending"):
            # Reactivation, nothing to record
            return None

        timestamp = payload.get(_TIMESTAMP_FIELDS.get(record_type, ""), None)
        if record_type == "Bounce" and payload.get("ID"):
            event_id = f"bounce:{payload['ID']}"
        else:
            event_id = f"{record_type}:{message_id}:{timestamp or ''}"

        metadata = payload.get("Metadata") or {}
        step_number = metadata.get("step_number")
        return RawProviderEvent(
            type=record_type,
            provider_event_id=event_id,
            provider_message_id=message_id,
            occurred_at=timestamp,
            enrollment_id=metadata.get("enrollment_id"),
            step_number=int(step_number) if str(step_number or "").isdigit() else None,
            metadata={
                "recipient": payload.get("Recipient") or payload.get("Email"),
                "bounce_type": payload.get("Type"),
                "link": payload.get("OriginalLink"),
                "user_agent": payload.get("UserAgent"),
                "tag": payload.get("Tag"),
            },
            payload=payload,
        )

    def get_capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            channel=self.channel,
            supports_batch=True,
            max_batch_size=MAX_BATCH_SIZE,
            supports_tracking=True,
            reports_send_events=False,
            webhook_events=tuple(_TIMESTAMP_FIELDS),
        )
