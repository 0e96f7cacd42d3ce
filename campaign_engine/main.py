"""FastAPI application entry point."""
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from campaign_engine.core.config import settings
from campaign_engine.core.errors import CampaignEngineError, RateLimitExceeded
from campaign_engine.core.redis_client import redis_status
from campaign_engine.db.session import engine

logger = logging.getLogger(__name__)

# ============================================================================
# Sentry (only when a DSN is configured outside dev)
# ============================================================================

if settings.SENTRY_DSN and settings.ENV != "dev":
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,
        send_default_pii=False,  # Contact data stays out of Sentry
    )
    logger.info("Sentry enabled for %s", settings.ENV)

# ============================================================================
# Rate Limiting (inbound)
# ============================================================================

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded as InboundRateLimitExceeded
from campaign_engine.core.rate_limit import limiter


# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Campaign Execution Engine",
    description="Multi-channel outreach campaigns: job queue, provider registry and event tracking",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
)

# Inbound limits for webhook endpoints
app.state.limiter = limiter
app.add_exception_handler(InboundRateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
    expose_headers=["Retry-After"],
)


# ============================================================================
# Error Handling
# ============================================================================

@app.exception_handler(CampaignEngineError)
async def campaign_engine_error_handler(request: Request, exc: CampaignEngineError):
    """Map the engine error taxonomy onto JSON responses."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    headers = None
    if isinstance(exc, RateLimitExceeded):
        headers = {"Retry-After": str(max(1, round(exc.retry_after)))}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


# ============================================================================
# Routers
# ============================================================================

from campaign_engine.routers import campaigns, jobs, providers, templates, webhooks

# Templates and their sequence steps
app.include_router(templates.router, prefix="/templates", tags=["templates"])

# Instances, enrollments, events, performance (mixed paths)
app.include_router(campaigns.router, tags=["campaigns"])

# Job queue operations
app.include_router(jobs.router, prefix="/jobs", tags=["jobs"])

# Provider webhooks (signature-verified, rate limited)
app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])

# Provider configuration summary
app.include_router(providers.router, prefix="/providers", tags=["providers"])


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
def health():
    """
    Health check endpoint.

    Verifies database connectivity and reports whether Redis answers.
    """
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {
        "status": "ok",
        "env": settings.ENV,
        "version": settings.VERSION,
        "redis": redis_status(),
    }
