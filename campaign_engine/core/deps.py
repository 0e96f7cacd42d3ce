"""FastAPI dependencies for database and provider access."""

from typing import Generator

from sqlalchemy.orm import Session

from campaign_engine.db.session import SessionLocal
from campaign_engine.services.providers import ProviderRegistry, get_provider_registry


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_registry() -> ProviderRegistry:
    """Provider registry dependency (overridden in tests)."""
    return get_provider_registry()
