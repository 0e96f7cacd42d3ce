"""Outbound provider implementations behind per-channel interfaces."""

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
    VideoProvider,
    VideoRequest,
    WebhookRequest,
)
from campaign_engine.services.providers.registry import (
    ProviderRegistry,
    get_provider_registry,
)

__all__ = [
    "BaseProvider",
    "EmailMessage",
    "EmailProvider",
    "LinkedInAction",
    "LinkedInProvider",
    "ProviderCapabilities",
    "RawProviderEvent",
    "SendResult",
    "StatusResult",
    "VideoProvider",
    "VideoRequest",
    "WebhookRequest",
    "ProviderRegistry",
    "get_provider_registry",
]
