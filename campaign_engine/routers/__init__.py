"""API routers."""

from campaign_engine.routers.campaigns import router as campaigns_router
from campaign_engine.routers.jobs import router as jobs_router
from campaign_engine.routers.providers import router as providers_router
from campaign_engine.routers.templates import router as templates_router
from campaign_engine.routers.webhooks import router as webhooks_router

__all__ = [
    "campaigns_router",
    "jobs_router",
    "providers_router",
    "templates_router",
    "webhooks_router",
]
