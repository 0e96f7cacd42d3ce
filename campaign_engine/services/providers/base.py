"""
Provider interfaces.

Each capability (email, LinkedIn, video) is an abstract base class; concrete
vendors subclass exactly one of them, so a missing method fails at
construction time rather than at the first call. All outbound HTTP goes
through ``BaseProvider._request``, which takes a rate-limit token per
attempt before touching the network.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar, Mapping

import httpx

from campaign_engine.core.config import Settings
from campaign_engine.core.errors import (
    ProviderApiError,
    ProviderConfigError,
    ProviderError,
    ProviderTimeoutError,
)
from campaign_engine.db.enums import Channel, LinkedInActionType
from campaign_engine.services.http_service import request_with_retries
from campaign_engine.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

_TEMPLATE_VAR = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


def render_template(text: str | None, variables: Mapping[str, Any] | None) -> str:
    """Substitute ``{{name}}`` placeholders; unknown names render empty."""
    if not text:
        return ""
    values = variables or {}
    return _TEMPLATE_VAR.sub(lambda m: str(values.get(m.group(1), "") or ""), text)


# =============================================================================
# Value types
# =============================================================================


@dataclass
class WebhookRequest:
    """Raw inbound webhook (headers are matched case-insensitively)."""

    body: bytes
    headers: Mapping[str, str] = field(default_factory=dict)
    query_params: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())


@dataclass
class EmailMessage:
    to_email: str
    subject: str
    html_body: str
    text_body: str | None = None
    from_email: str | None = None
    reply_to: str | None = None
    variables: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    # Vendor-side campaign (Lemlist adds the lead to this campaign)
    provider_campaign_id: str | None = None


@dataclass
class LinkedInAction:
    action_type: LinkedInActionType
    profile_url: str
    message: str | None = None
    contact_email: str | None = None
    variables: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    provider_campaign_id: str | None = None


@dataclass
class VideoRequest:
    script: str
    avatar_id: str
    voice_id: str
    title: str | None = None
    callback_id: str | None = None
    variables: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SendResult:
    provider: str
    success: bool
    message_id: str | None = None
    error: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class StatusResult:
    provider: str
    id: str
    status: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class RawProviderEvent:
    """Vendor event before normalization (``type`` is the vendor's vocabulary)."""

    type: str
    provider_event_id: str
    provider_message_id: str | None = None
    occurred_at: Any = None
    enrollment_id: str | None = None
    step_number: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderCapabilities:
    channel: Channel
    supports_batch: bool = False
    max_batch_size: int = 1
    supports_status: bool = True
    supports_tracking: bool = False
    # False when the vendor never webhooks the send itself (engine records it)
    reports_send_events: bool = True
    webhook_events: tuple[str, ...] = ()


# =============================================================================
# Base provider
# =============================================================================


class BaseProvider(ABC):
    """Shared HTTP, config validation and batch fallback for every vendor."""

    name: ClassVar[str]
    channel: ClassVar[Channel]
    required_settings: ClassVar[tuple[str, ...]] = ()
    webhook_secret_setting: ClassVar[str] = ""
    base_url_setting: ClassVar[str] = ""

    retry_base_delay: float = 0.5

    def __init__(
        self,
        config: Settings,
        rate_limiter: RateLimiter,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self.rate_limiter = rate_limiter
        self._transport = transport

    # -- configuration -------------------------------------------------------

    @property
    def base_url(self) -> str:
        return str(getattr(self.config, self.base_url_setting, "")).rstrip("/")

    @property
    def webhook_secret(self) -> str:
        return str(getattr(self.config, self.webhook_secret_setting, "") or "")

    def validate_config(self) -> None:
        """Raise ProviderConfigError listing every missing setting."""
        missing = [key for key in self.required_settings if not getattr(self.config, key, "")]
        if missing:
            raise ProviderConfigError(self.name, missing)

    def describe(self) -> dict[str, Any]:
        capabilities = self.get_capabilities()
        return {
            "name": self.name,
            "channel": self.channel.value,
            "base_url": self.base_url,
            "supports_batch": capabilities.supports_batch,
            "max_batch_size": capabilities.max_batch_size,
        }

    # -- http ----------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {"Accept": "application/json"}

    def _auth(self) -> httpx.Auth | tuple[str, str] | None:
        return None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self.base_url}{path}"

        async def do_request() -> httpx.Response:
            await self.rate_limiter.acquire(self.name)
            async with httpx.AsyncClient(
                timeout=self.config.PROVIDER_TIMEOUT_SECONDS,
                transport=self._transport,
            ) as client:
                return await client.request(
                    method,
                    url,
                    headers=self._headers(),
                    auth=self._auth(),
                    json=json,
                    params=params,
                )

        try:
            response = await request_with_retries(
                do_request,
                max_attempts=self.config.PROVIDER_MAX_ATTEMPTS,
                base_delay=self.retry_base_delay,
                max_delay=8.0 if self.retry_base_delay else 0,
                label=self.name,
            )
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(self.name, f"{method} {path} timed out") from exc
        except httpx.RequestError as exc:
            raise ProviderError(self.name, f"{method} {path} failed: {exc}") from exc

        if response.status_code >= 400:
            raise ProviderApiError(self.name, response.status_code, _response_body(response))
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(self.name, f"{method} {path} returned invalid JSON") from exc

    # -- interface -----------------------------------------------------------

    @abstractmethod
    async def send(self, params) -> SendResult:
        """Perform one outbound action."""

    async def send_batch(self, items: list) -> list[SendResult]:
        """
        Send several items.

        Vendors without a batch endpoint send one by one; a failed item is
        reported in its result and does not stop the rest.
        """
        results: list[SendResult] = []
        for item in items:
            try:
                results.append(await self.send(item))
            except ProviderError as exc:
                results.append(SendResult(provider=self.name, success=False, error=str(exc)))
        return results

    @abstractmethod
    async def get_status(self, id: str) -> StatusResult:
        """Fetch the vendor-side status of a message, action or video."""

    @abstractmethod
    def verify_webhook_signature(self, request: WebhookRequest, secret: str) -> bool:
        """Return True only for authentic requests. Empty secrets always fail."""

    @abstractmethod
    def parse_webhook_event(self, payload: dict) -> RawProviderEvent | None:
        """Extract the vendor event. None means the payload carries nothing to record."""

    @abstractmethod
    def get_capabilities(self) -> ProviderCapabilities:
        ...


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:1000]


class EmailProvider(BaseProvider):
    """Email capability: ``send`` takes an EmailMessage."""

    channel = Channel.EMAIL

    @abstractmethod
    async def send(self, params: EmailMessage) -> SendResult:
        ...


class LinkedInProvider(BaseProvider):
    """LinkedIn capability: ``send`` takes a LinkedInAction."""

    channel = Channel.LINKEDIN

    @abstractmethod
    async def send(self, params: LinkedInAction) -> SendResult:
        ...


class VideoProvider(BaseProvider):
    """Video capability: ``send`` starts a generation from a VideoRequest."""

    channel = Channel.VIDEO

    @abstractmethod
    async def send(self, params: VideoRequest) -> SendResult:
        ...
