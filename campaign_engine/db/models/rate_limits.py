"""Shared rate-limit state: outbound token buckets and LinkedIn daily caps."""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Date, Float, Integer, String, func, text
from sqlalchemy.orm import Mapped, mapped_column

from campaign_engine.db.base import Base
from campaign_engine.utils import utc_now


class RateLimitBucket(Base):
    """
    Token bucket for one external service.

    Read and written under a row lock so concurrent workers in different
    processes never double-spend a token. ``version`` counts acquisitions.
    """

    __tablename__ = "rate_limit_buckets"

    service_name: Mapped[str] = mapped_column(String(100), primary_key=True)
    capacity: Mapped[float] = mapped_column(Float, nullable=False)
    tokens: Mapped[float] = mapped_column(Float, nullable=False)
    refill_rate: Mapped[float] = mapped_column(Float, nullable=False)
    refill_interval_seconds: Mapped[float] = mapped_column(Float, nullable=False)
    # Epoch seconds of the last whole refill interval
    last_refill: Mapped[float] = mapped_column(Float, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"), nullable=False)


class LinkedInDailyUsage(Base):
    """
    LinkedIn actions taken by one account on one day.

    The day is the calendar date in LINKEDIN_LIMITS_TIMEZONE. Accounts are
    identified by a hash of their session cookie, never the cookie itself.
    """

    __tablename__ = "linkedin_daily_usage"

    account_identifier: Mapped[str] = mapped_column(String(64), primary_key=True)
    usage_date: Mapped[date] = mapped_column(Date, primary_key=True)
    connections_sent: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"), nullable=False)
    messages_sent: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"), nullable=False)
    profile_visits: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, server_default=func.now(), nullable=False
    )
