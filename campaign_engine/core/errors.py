"""Error taxonomy shared by services, routers and the worker."""

from __future__ import annotations

from typing import Any


class CampaignEngineError(Exception):
    """Base exception for engine errors."""

    status_code = 500

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "error": type(self).__name__}


class ValidationError(CampaignEngineError):
    """Malformed input. Never retried."""

    status_code = 400


class NotFoundError(CampaignEngineError):
    """Referenced entity does not exist."""

    status_code = 404


class ConflictError(CampaignEngineError):
    """Illegal state transition or write that conflicts with current state."""

    status_code = 409


class RateLimitExceeded(CampaignEngineError):
    """Token bucket exhausted; caller must back off."""

    status_code = 429

    def __init__(self, service: str, retry_after: float = 0.0):
        super().__init__(f"Rate limit exceeded for {service}", service=service)
        self.service = service
        self.retry_after = retry_after

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["retry_after"] = round(self.retry_after, 3)
        return data


class WebhookSignatureInvalid(CampaignEngineError):
    """Webhook signature failed verification."""

    status_code = 401


class ProviderError(CampaignEngineError):
    """Vendor API failure."""

    status_code = 502

    def __init__(self, provider: str, message: str, **context: Any):
        super().__init__(f"[{provider}] {message}", provider=provider, **context)
        self.provider = provider


class ProviderConfigError(ProviderError):
    """Provider is missing required configuration."""

    def __init__(self, provider: str, missing: list[str]):
        super().__init__(
            provider, f"Missing configuration: {', '.join(missing)}", missing=missing
        )
        self.missing = missing


class ProviderApiError(ProviderError):
    """Provider returned a non-success HTTP status."""

    def __init__(self, provider: str, status_code: int, body: Any = None):
        super().__init__(provider, f"API error {status_code}", body=body)
        self.http_status = status_code
        self.body = body


class ProviderTimeoutError(ProviderError):
    """Provider request timed out or could not connect."""
    pass
