"""Lemlist provider (email and LinkedIn steps of a Lemlist campaign)."""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

from campaign_engine.core.errors import ValidationError
from campaign_engine.services.providers.base import (
    BaseProvider,
    EmailMessage,
    EmailProvider,
    LinkedInAction,
    LinkedInProvider,
    ProviderCapabilities,
    RawProviderEvent,
    SendResult,
    StatusResult,
    WebhookRequest,
)
from campaign_engine.services.providers.signatures import verify_signed_request

EMAIL_ACTIVITY_TYPES = (
    "emailsSent",
    "emailsOpened",
    "emailsClicked",
    "emailsReplied",
    "emailsBounced",
    "emailsUnsubscribed",
)
LINKEDIN_ACTIVITY_TYPES = (
    "linkedinVisitDone",
    "linkedinInviteDone",
    "linkedinInviteAccepted",
    "linkedinSent",
    "linkedinOpened",
    "linkedinReplied",
)


class _LemlistMixin(BaseProvider):
    """
    Lemlist adds leads to a vendor-side campaign, which then performs the
    configured steps. The returned lead id is the message id used to
    correlate activity webhooks.
    """

    name = "lemlist"
    required_settings = ("LEMLIST_API_KEY", "LEMLIST_WEBHOOK_SECRET")
    webhook_secret_setting = "LEMLIST_WEBHOOK_SECRET"
    base_url_setting = "LEMLIST_API_URL"

    def _auth(self) -> tuple[str, str]:
        # API key goes in the password slot with an empty user
        return ("", self.config.LEMLIST_API_KEY)

    async def _add_lead(
        self,
        campaign_id: str | None,
        email: str | None,
        fields: dict[str, Any],
    ) -> SendResult:
        if not campaign_id:
            raise ValidationError("Lemlist send requires provider_config.lemlist_campaign_id")
        if not email:
            raise ValidationError("Lemlist send requires the contact email")
        data = await self._request(
            "POST",
            f"/campaigns/{quote(campaign_id, safe='')}/leads/{quote(email, safe='@')}",
            params={"deduplicate": "true"},
            json={k: v for k, v in fields.items() if v is not None},
        )
        lead_id = data.get("_id") or data.get("leadId")
        return SendResult(provider=self.name, success=bool(lead_id), message_id=lead_id, raw=data)

    async def get_status(self, id: str) -> StatusResult:
        data = await self._request("GET", "/activities", params={"leadId": id, "limit": 1})
        latest = data[0] if isinstance(data, list) and data else {}
        return StatusResult(
            provider=self.name,
            id=id,
            status=str(latest.get("type", "pending")),
            raw={"activities": data},
        )

    def verify_webhook_signature(self, request: WebhookRequest, secret: str) -> bool:
        return verify_signed_request(
            request.body,
            request.header("x-lemlist-signature"),
            secret,
            timestamp=request.header("x-timestamp"),
        )

    def parse_webhook_event(self, payload: dict) -> RawProviderEvent | None:
        activity_type = payload.get("type")
        activity_id = payload.get("_id") or payload.get("id")
        if not activity_type or not activity_id:
            raise ValidationError("Lemlist webhook missing type or _id")

        step = payload.get("sequenceStep")
        return RawProviderEvent(
            type=activity_type,
            provider_event_id=str(activity_id),
            provider_message_id=payload.get("leadId"),
            occurred_at=payload.get("createdAt"),
            enrollment_id=payload.get("enrollmentId"),
            # Lemlist sequence steps are 0-based
            step_number=step + 1 if isinstance(step, int) else None,
            metadata={
                "campaign_id": payload.get("campaignId"),
                "link": payload.get("url"),
                "lemlist_email_id": payload.get("emailId"),
            },
            payload=payload,
        )


class LemlistEmailProvider(_LemlistMixin, EmailProvider):
    async def send(self, params: EmailMessage) -> SendResult:
        fields = dict(params.variables)
        fields.update(
            {
                "subject": params.subject,
                "body": params.html_body,
                "enrollmentId": params.metadata.get("enrollment_id"),
                "stepNumber": params.metadata.get("step_number"),
            }
        )
        return await self._add_lead(params.provider_campaign_id, params.to_email, fields)

    def get_capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            channel=self.channel,
            supports_tracking=True,
            webhook_events=EMAIL_ACTIVITY_TYPES,
        )


class LemlistLinkedInProvider(_LemlistMixin, LinkedInProvider):
    async def send(self, params: LinkedInAction) -> SendResult:
        if not params.profile_url:
            raise ValidationError("Lemlist LinkedIn step requires the contact LinkedIn URL")
        fields = dict(params.variables)
        fields.update(
            {
                "linkedinUrl": params.profile_url,
                "linkedinMessage": params.message,
                "linkedinAction": params.action_type.value,
                "enrollmentId": params.metadata.get("enrollment_id"),
                "stepNumber": params.metadata.get("step_number"),
            }
        )
        return await self._add_lead(params.provider_campaign_id, params.contact_email, fields)

    def get_capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            channel=self.channel,
            supports_tracking=True,
            webhook_events=LINKEDIN_ACTIVITY_TYPES,
        )
