"""HeyGen personalized video provider."""

from __future__ import annotations

import hmac
import logging

from campaign_engine.core.errors import ValidationError
from campaign_engine.services.providers.base import (
    ProviderCapabilities,
    RawProviderEvent,
    SendResult,
    StatusResult,
    VideoProvider,
    VideoRequest,
    WebhookRequest,
    render_template,
)
from campaign_engine.services.providers.signatures import (
    compute_hmac_sha256,
    timestamp_within_window,
)

logger = logging.getLogger(__name__)

VIDEO_DIMENSION = {"width": 1280, "height": 720}
SIGNATURE_TOLERANCE_SECONDS = 300

WEBHOOK_EVENTS = (
    "avatar_video.success",
    "avatar_video.fail",
    "video.completed",
    "video.failed",
    "video.viewed",
    "video.watch_completed",
)


class HeyGenVideoProvider(VideoProvider):
    """
    Avatar video generation.

    ``send`` only starts a render; completion arrives on the callback
    webhook. The callback id is ``"{enrollment_id}:{step_number}"`` so the
    event can be attributed without a lookup.
    """

    name = "heygen"
    required_settings = ("HEYGEN_API_KEY", "HEYGEN_WEBHOOK_SECRET")
    webhook_secret_setting = "HEYGEN_WEBHOOK_SECRET"
    base_url_setting = "HEYGEN_API_URL"

    def _headers(self) -> dict[str, str]:
        return {"Accept": "application/json", "X-Api-Key": self.config.HEYGEN_API_KEY}

    @property
    def callback_url(self) -> str:
        return f"{self.config.API_BASE_URL.rstrip('/')}/webhooks/video/{self.name}"

    async def send(self, params: VideoRequest) -> SendResult:
        script = render_template(params.script, params.variables)
        if not script.strip():
            raise ValidationError("Video script renders empty")
        body = {
            "video_inputs": [
                {
                    "character": {
                        "type": "avatar",
                        "avatar_id": params.avatar_id,
                        "avatar_style": "normal",
                    },
                    "voice": {
                        "type": "text",
                        "input_text": script,
                        "voice_id": params.voice_id,
                    },
                }
            ],
            "dimension": VIDEO_DIMENSION,
            "callback_url": self.callback_url,
        }
        if params.title:
            body["title"] = params.title
        if params.callback_id:
            body["callback_id"] = params.callback_id

        data = await self._request("POST", "/v2/video/generate", json=body)
        video_id = (data.get("data") or {}).get("video_id")
        return SendResult(
            provider=self.name,
            success=bool(video_id),
            message_id=video_id,
            error=None if video_id else str(data.get("error") or "No video_id returned"),
            raw=data,
        )

    async def get_status(self, id: str) -> StatusResult:
        data = await self._request("GET", "/v1/video_status.get", params={"video_id": id})
        details = data.get("data") or {}
        return StatusResult(
            provider=self.name,
            id=id,
            status=str(details.get("status", "unknown")),
            raw=details,
        )

    async def get_remaining_quota(self) -> float | None:
        data = await self._request("GET", "/v2/user/remaining_quota")
        quota = (data.get("data") or {}).get("remaining_quota")
        return float(quota) if quota is not None else None

    def verify_webhook_signature(self, request: WebhookRequest, secret: str) -> bool:
        if not secret:
            return False
        header = request.header("x-heygen-signature") or ""
        timestamp, _, signature = header.partition(",")
        if not timestamp or not signature:
            return False
        if not timestamp_within_window(
            timestamp,
            max_age_seconds=SIGNATURE_TOLERANCE_SECONDS,
            max_future_skew_seconds=SIGNATURE_TOLERANCE_SECONDS,
        ):
            return False
        signed = f"{timestamp}.".encode("utf-8") + request.body
        expected = compute_hmac_sha256(secret, signed)
        return hmac.compare_digest(expected.encode("utf-8"), signature.strip().lower().encode("utf-8"))

    def parse_webhook_event(self, payload: dict) -> RawProviderEvent | None:
        event_type = payload.get("event_type")
        data = payload.get("event_data") or payload.get("data") or {}
        video_id = data.get("video_id")
        if not event_type or not video_id:
            raise ValidationError("HeyGen webhook missing event_type or video_id")

        enrollment_id = None
        step_number = None
        callback_id = data.get("callback_id") or ""
        if callback_id:
            enrollment_part, _, step_part = callback_id.partition(":")
            enrollment_id = enrollment_part or None
            step_number = int(step_part) if step_part.isdigit() else None

        occurred_at = payload.get("timestamp") or data.get("timestamp")
        event_id = f"{event_type}:{video_id}"
        if event_type in ("video.viewed", "video.watch_completed") and occurred_at:
            event_id = f"{event_id}:{occurred_at}"

        return RawProviderEvent(
            type=event_type,
            provider_event_id=event_id,
            provider_message_id=video_id,
            occurred_at=occurred_at,
            enrollment_id=enrollment_id,
            step_number=step_number,
            metadata={
                "video_url": data.get("url") or data.get("video_url"),
                "thumbnail_url": data.get("thumbnail_url"),
                "error": data.get("msg") or data.get("error"),
                "watch_percentage": data.get("watch_percentage"),
            },
            payload=payload,
        )

    def get_capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            channel=self.channel,
            supports_tracking=True,
            webhook_events=WEBHOOK_EVENTS,
        )
