"""PhantomBuster LinkedIn automation provider."""

from __future__ import annotations

import hmac
import logging

import httpx
from starlette.concurrency import run_in_threadpool

from campaign_engine.core.config import Settings
from campaign_engine.core.errors import ProviderConfigError, ValidationError
from campaign_engine.db.enums import LinkedInActionType
from campaign_engine.db.session import SessionLocal
from campaign_engine.services.linkedin_limits import LinkedInDailyLimits, account_identifier
from campaign_engine.services.providers.base import (
    LinkedInAction,
    LinkedInProvider,
    ProviderCapabilities,
    RawProviderEvent,
    SendResult,
    StatusResult,
    WebhookRequest,
    render_template,
)
from campaign_engine.services.providers.signatures import verify_hmac_signature
from campaign_engine.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

AGENT_SETTINGS = {
    LinkedInActionType.PROFILE_VISIT: "PHANTOMBUSTER_PROFILE_VISITOR_AGENT_ID",
    LinkedInActionType.CONNECTION_REQUEST: "PHANTOMBUSTER_CONNECTION_AGENT_ID",
    LinkedInActionType.MESSAGE: "PHANTOMBUSTER_MESSAGE_AGENT_ID",
}

CONTAINER_STATUSES = {
    "starting": "queued",
    "running": "processing",
    "finished": "completed",
    "error": "failed",
    "failed": "failed",
}

# Events reported by inbox/network monitoring agents rather than launch callbacks
MONITOR_EVENTS = (
    "connection_accepted",
    "connection_rejected",
    "message_read",
    "message_replied",
)


class PhantomBusterLinkedInProvider(LinkedInProvider):
    """
    Launches one PhantomBuster agent per LinkedIn action.

    The agent container id is the action id. Launch callbacks carry the
    argument we launched with, so the action type and enrollment come back
    with the webhook. Every launch counts against the account's daily caps.
    """

    name = "phantombuster"
    required_settings = (
        "PHANTOMBUSTER_API_KEY",
        "PHANTOMBUSTER_WEBHOOK_SECRET",
        "LINKEDIN_SESSION_COOKIE",
    )
    webhook_secret_setting = "PHANTOMBUSTER_WEBHOOK_SECRET"
    base_url_setting = "PHANTOMBUSTER_API_URL"

    def __init__(
        self,
        config: Settings,
        rate_limiter: RateLimiter,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        daily_limits: LinkedInDailyLimits | None = None,
    ):
        super().__init__(config, rate_limiter, transport=transport)
        self._daily_limits = daily_limits

    @property
    def daily_limits(self) -> LinkedInDailyLimits:
        if self._daily_limits is None:
            self._daily_limits = LinkedInDailyLimits(SessionLocal, self.config)
        return self._daily_limits

    @property
    def account(self) -> str:
        return account_identifier(self.config.LINKEDIN_SESSION_COOKIE)

    def daily_usage(self) -> dict:
        return self.daily_limits.status(self.account)

    def _headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "X-Phantombuster-Key-1": self.config.PHANTOMBUSTER_API_KEY,
        }

    def validate_config(self) -> None:
        super().validate_config()
        if not any(getattr(self.config, key) for key in AGENT_SETTINGS.values()):
            raise ProviderConfigError(self.name, list(AGENT_SETTINGS.values()))

    def describe(self) -> dict:
        data = super().describe()
        data["actions"] = [action.value for action in configured_actions(self.config)]
        return data

    def _agent_id(self, action_type: LinkedInActionType) -> str:
        setting = AGENT_SETTINGS[action_type]
        agent_id = getattr(self.config, setting)
        if not agent_id:
            raise ProviderConfigError(self.name, [setting])
        return agent_id

    async def send(self, params: LinkedInAction) -> SendResult:
        if not params.profile_url:
            raise ValidationError("PhantomBuster action requires the contact LinkedIn URL")
        action_type = LinkedInActionType(params.action_type)
        if action_type == LinkedInActionType.MESSAGE and not params.message:
            raise ValidationError("LinkedIn message step has no message")

        argument = {
            "sessionCookie": self.config.LINKEDIN_SESSION_COOKIE,
            "profileUrls": [params.profile_url],
            "action": action_type.value,
            "message": render_template(params.message, params.variables) or None,
            "enrollmentId": params.metadata.get("enrollment_id"),
            "stepNumber": params.metadata.get("step_number"),
        }
        agent_id = self._agent_id(action_type)

        remaining = await run_in_threadpool(self.daily_limits.reserve, self.account, action_type)
        try:
            data = await self._request(
                "POST",
                "/agents/launch",
                json={
                    "id": agent_id,
                    "argument": {k: v for k, v in argument.items() if v is not None},
                },
            )
        except Exception:
            await run_in_threadpool(self.daily_limits.release, self.account, action_type)
            raise
        container_id = data.get("containerId")
        if not container_id:
            await run_in_threadpool(self.daily_limits.release, self.account, action_type)
        else:
            logger.debug("Launched %s, %s left today", action_type.value, remaining)
        return SendResult(
            provider=self.name,
            success=bool(container_id),
            message_id=str(container_id) if container_id else None,
            error=None if container_id else "No containerId returned",
            raw={k: v for k, v in data.items() if k != "argument"},
        )

    async def get_status(self, id: str) -> StatusResult:
        data = await self._request("GET", "/containers/fetch", params={"id": id})
        status = str(data.get("status", "unknown")).lower()
        return StatusResult(
            provider=self.name,
            id=id,
            status=CONTAINER_STATUSES.get(status, status),
            raw=data,
        )

    def verify_webhook_signature(self, request: WebhookRequest, secret: str) -> bool:
        if not secret:
            return False
        signature = request.header("x-phantombuster-signature")
        if signature:
            return verify_hmac_signature(request.body, signature, secret)
        token = request.header("x-phantombuster-token")
        if token:
            return hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8"))
        return False

    def parse_webhook_event(self, payload: dict) -> RawProviderEvent | None:
        container_id = payload.get("containerId")
        if not container_id:
            raise ValidationError("PhantomBuster webhook missing containerId")

        argument = payload.get("argument") or {}
        monitor_event = payload.get("event")
        if monitor_event:
            vendor_type = monitor_event
        else:
            status = str(payload.get("status") or payload.get("exitMessage") or "").lower()
            action = argument.get("action")
            if status not in ("finished", "success"):
                logger.warning(
                    "PhantomBuster container %s ended with status %s", container_id, status or "unknown"
                )
                return None
            vendor_type = f"{action}.finished"

        step = argument.get("stepNumber")
        return RawProviderEvent(
            type=vendor_type,
            provider_event_id=f"{container_id}:{vendor_type}",
            provider_message_id=str(container_id),
            occurred_at=payload.get("endedAt") or payload.get("timestamp"),
            enrollment_id=argument.get("enrollmentId"),
            step_number=int(step) if isinstance(step, int) else None,
            metadata={
                "agent_id": payload.get("agentId"),
                "agent_name": payload.get("agentName"),
                "profile_url": (argument.get("profileUrls") or [None])[0],
            },
            payload={k: v for k, v in payload.items() if k != "argument"},
        )

    def get_capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            channel=self.channel,
            supports_tracking=True,
            webhook_events=tuple(f"{a.value}.finished" for a in AGENT_SETTINGS) + MONITOR_EVENTS,
        )


def configured_actions(config: Settings) -> list[LinkedInActionType]:
    """LinkedIn actions that have an agent configured."""
    return [action for action, setting in AGENT_SETTINGS.items() if getattr(config, setting)]
