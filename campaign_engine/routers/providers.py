"""Providers router - which vendor serves each channel."""

from fastapi import APIRouter, Depends

from campaign_engine.core.deps import get_registry
from campaign_engine.db.enums import Channel
from campaign_engine.services.providers import ProviderRegistry

router = APIRouter(tags=["Providers"])


@router.get("")
def list_providers(registry: ProviderRegistry = Depends(get_registry)) -> dict:
    """Selected provider per channel, its capabilities and any missing settings."""
    return registry.describe()


@router.get("/linkedin/daily-usage")
def linkedin_daily_usage(registry: ProviderRegistry = Depends(get_registry)) -> dict:
    """Today's PhantomBuster actions against the account's daily caps."""
    provider = registry.get(Channel.LINKEDIN, "phantombuster")
    return provider.daily_usage()
