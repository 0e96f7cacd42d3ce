"""
Provider registry.

One selector setting per capability (EMAIL_PROVIDER, LINKEDIN_PROVIDER,
VIDEO_PROVIDER) picks a variant from a closed table. Providers are built on
first use, validated fail-fast and cached; swapping vendors is a
configuration change only.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from campaign_engine.core.config import Settings, settings as default_settings
from campaign_engine.core.errors import ProviderConfigError, ValidationError
from campaign_engine.db.enums import Channel
from campaign_engine.services.providers.base import BaseProvider
from campaign_engine.services.providers.heygen import HeyGenVideoProvider
from campaign_engine.services.providers.lemlist import (
    LemlistEmailProvider,
    LemlistLinkedInProvider,
)
from campaign_engine.services.providers.phantombuster import PhantomBusterLinkedInProvider
from campaign_engine.services.providers.postmark import PostmarkEmailProvider
from campaign_engine.services.rate_limiter import RateLimiter, get_rate_limiter

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: dict[Channel, dict[str, type[BaseProvider]]] = {
    Channel.EMAIL: {
        "postmark": PostmarkEmailProvider,
        "lemlist": LemlistEmailProvider,
    },
    Channel.LINKEDIN: {
        "phantombuster": PhantomBusterLinkedInProvider,
        "lemlist": LemlistLinkedInProvider,
    },
    Channel.VIDEO: {
        "heygen": HeyGenVideoProvider,
    },
}

SELECTOR_SETTINGS: dict[Channel, str] = {
    Channel.EMAIL: "EMAIL_PROVIDER",
    Channel.LINKEDIN: "LINKEDIN_PROVIDER",
    Channel.VIDEO: "VIDEO_PROVIDER",
}


class ProviderRegistry:
    def __init__(
        self,
        config: Settings | None = None,
        rate_limiter: RateLimiter | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config or default_settings
        self._rate_limiter = rate_limiter
        self._transport = transport
        self._cache: dict[tuple[Channel, str], BaseProvider] = {}

    @property
    def rate_limiter(self) -> RateLimiter:
        if self._rate_limiter is None:
            self._rate_limiter = get_rate_limiter()
        return self._rate_limiter

    def selected_name(self, channel: Channel) -> str:
        return str(getattr(self.config, SELECTOR_SETTINGS[channel])).strip().lower()

    def get(self, channel: Channel | str, name: str | None = None) -> BaseProvider:
        """
        Return the provider for ``channel``.

        Without ``name`` the configured selector is used. Webhooks pass the
        name from the URL so events from a previously active vendor still
        resolve.
        """
        try:
            channel = Channel(channel)
        except ValueError:
            raise ValidationError(f"Unknown channel: {channel}") from None
        provider_name = (name or self.selected_name(channel)).strip().lower()
        key = (channel, provider_name)
        provider = self._cache.get(key)
        if provider is not None:
            return provider

        provider_cls = PROVIDER_CLASSES[channel].get(provider_name)
        if provider_cls is None:
            available = ", ".join(sorted(PROVIDER_CLASSES[channel]))
            raise ValidationError(
                f"Unknown {channel.value} provider '{provider_name}' (available: {available})"
            )
        provider = provider_cls(self.config, self.rate_limiter, transport=self._transport)
        provider.validate_config()
        self._cache[key] = provider
        logger.info("Initialized %s provider %s", channel.value, provider_name)
        return provider

    def email(self) -> BaseProvider:
        return self.get(Channel.EMAIL)

    def linkedin(self) -> BaseProvider:
        return self.get(Channel.LINKEDIN)

    def video(self) -> BaseProvider:
        return self.get(Channel.VIDEO)

    def validate_all(self) -> dict[str, list[str]]:
        """Validate every selected provider; returns missing settings per channel."""
        errors: dict[str, list[str]] = {}
        for channel in Channel:
            try:
                self.get(channel)
            except ProviderConfigError as exc:
                errors[channel.value] = exc.missing
            except ValidationError as exc:
                errors[channel.value] = [exc.message]
        return errors

    def describe(self) -> dict[str, Any]:
        """Summary of the selected provider per channel (never includes credentials)."""
        summary: dict[str, Any] = {}
        errors = self.validate_all()
        for channel in Channel:
            entry: dict[str, Any] = {
                "selected": self.selected_name(channel),
                "available": sorted(PROVIDER_CLASSES[channel]),
                "configured": channel.value not in errors,
            }
            if channel.value in errors:
                entry["errors"] = errors[channel.value]
            else:
                entry.update(self.get(channel).describe())
            summary[channel.value] = entry
        return summary

    def clear_cache(self) -> None:
        self._cache.clear()


_registry: ProviderRegistry | None = None


def get_provider_registry() -> ProviderRegistry:
    global _registry
    if _registry is None:
        _registry = ProviderRegistry()
    return _registry
