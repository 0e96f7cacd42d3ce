"""
Test configuration and fixtures.

Provides:
- A throwaway SQLite database (TEST_DATABASE_URL overrides it)
- Database session; tables are emptied after each test
- Provider registry with test credentials and a fakeredis-backed rate limiter
- HTTPX AsyncClient wired to both
"""
import os
import tempfile
from typing import AsyncGenerator, Generator

_TEST_DB_DIR = tempfile.mkdtemp(prefix="campaign-engine-tests-")
os.environ["DATABASE_URL"] = os.environ.get("TEST_DATABASE_URL") or (
    f"sqlite:///{os.path.join(_TEST_DB_DIR, 'test.db')}"
)
os.environ["TESTING"] = "1"
os.environ["REDIS_URL"] = "memory://"
os.environ["ENV"] = "test"

import fakeredis
import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.orm import Session

from campaign_engine.core.config import Settings
from campaign_engine.core.deps import get_db, get_registry
from campaign_engine.db.base import Base
from campaign_engine.db.enums import InstanceStatus, TemplateType
from campaign_engine.db.models import CampaignTemplate
from campaign_engine.db.session import SessionLocal, engine
from campaign_engine.main import app
from campaign_engine.schemas.campaign import (
    EmailStepCreate,
    InstanceCreate,
    LinkedInStepCreate,
    TemplateCreate,
)
from campaign_engine.services import campaign_service
from campaign_engine.services.providers import ProviderRegistry, registry as registry_module
from campaign_engine.services import rate_limiter as rate_limiter_module
from campaign_engine.services.rate_limiter import RateLimiter, RedisBucketStore


TEST_WEBHOOK_SECRETS = {
    "LEMLIST_WEBHOOK_SECRET": "lemlist-test-secret",
    "POSTMARK_WEBHOOK_SECRET": "hooks:postmark-test-secret",
    "PHANTOMBUSTER_WEBHOOK_SECRET": "phantom-test-secret",
    "HEYGEN_WEBHOOK_SECRET": "heygen-test-secret",
}


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="session", autouse=True)
def _schema() -> Generator[None, None, None]:
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(autouse=True)
def _clean_tables() -> Generator[None, None, None]:
    """Empty every table after each test and drop cached singletons."""
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    registry_module._registry = None
    rate_limiter_module._rate_limiter = None


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


# =============================================================================
# Provider Fixtures
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    """Settings with every provider configured."""
    return Settings(
        DATABASE_URL=os.environ["DATABASE_URL"],
        LEMLIST_API_KEY="lemlist-key",
        POSTMARK_SERVER_TOKEN="postmark-token",
        POSTMARK_SENDER_EMAIL="outreach@example.com",
        PHANTOMBUSTER_API_KEY="phantom-key",
        PHANTOMBUSTER_PROFILE_VISITOR_AGENT_ID="agent-visit",
        PHANTOMBUSTER_CONNECTION_AGENT_ID="agent-connect",
        PHANTOMBUSTER_MESSAGE_AGENT_ID="agent-message",
        LINKEDIN_SESSION_COOKIE="li-cookie",
        HEYGEN_API_KEY="heygen-key",
        PROVIDER_MAX_ATTEMPTS=2,
        **TEST_WEBHOOK_SECRETS,
    )


@pytest.fixture
def fake_redis():
    return fakeredis.FakeRedis()


@pytest.fixture
def test_rate_limiter(fake_redis) -> RateLimiter:
    return RateLimiter(RedisBucketStore(fake_redis))


@pytest.fixture
def test_registry(test_settings, test_rate_limiter) -> ProviderRegistry:
    return ProviderRegistry(test_settings, test_rate_limiter)


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(db: Session, test_registry: ProviderRegistry) -> AsyncGenerator[AsyncClient, None]:
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_registry] = lambda: test_registry

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as c:
        yield c

    app.dependency_overrides.clear()


# =============================================================================
# Campaign Fixtures
# =============================================================================

@pytest.fixture
def email_template(db: Session) -> CampaignTemplate:
    """Two email steps (step 1 has A/B variants) and a LinkedIn visit."""
    return campaign_service.create_template(
        db,
        TemplateCreate(
            name="Founder outreach",
            type=TemplateType.MULTI_CHANNEL,
            email_steps=[
                EmailStepCreate(step_number=1, subject="Hi {{first_name}}", body="Intro A"),
                EmailStepCreate(
                    step_number=1, subject="Hello {{first_name}}", body="Intro B", a_b_variant="B"
                ),
                EmailStepCreate(step_number=3, subject="Following up", body="Bump", delay_hours=48),
            ],
            linkedin_steps=[
                LinkedInStepCreate(step_number=2, action_type="profile_visit", delay_hours=24),
            ],
        ),
    )


@pytest.fixture
def draft_instance(db: Session, email_template):
    return campaign_service.create_instance(
        db,
        InstanceCreate(
            template_id=email_template.id,
            name="Q3 founders",
            provider_config={"lemlist_campaign_id": "cam_123"},
        ),
    )


@pytest.fixture
def active_instance(db: Session, draft_instance):
    return campaign_service.update_status(db, draft_instance.id, InstanceStatus.ACTIVE)
