"""
Daily LinkedIn action caps per account.

LinkedIn restricts accounts that automate too much in one day, so every
PhantomBuster launch first takes a slot from today's usage row. Checking
the cap and counting the action happen under one row lock; a launch that
fails hands its slot back.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from campaign_engine.core.config import Settings
from campaign_engine.core.errors import RateLimitExceeded, ValidationError
from campaign_engine.db.enums import LinkedInActionType
from campaign_engine.db.models import LinkedInDailyUsage
from campaign_engine.utils import utc_now

logger = logging.getLogger(__name__)

USAGE_COLUMNS = {
    LinkedInActionType.CONNECTION_REQUEST: "connections_sent",
    LinkedInActionType.MESSAGE: "messages_sent",
    LinkedInActionType.PROFILE_VISIT: "profile_visits",
}

LIMIT_SETTINGS = {
    LinkedInActionType.CONNECTION_REQUEST: "LINKEDIN_DAILY_CONNECTION_LIMIT",
    LinkedInActionType.MESSAGE: "LINKEDIN_DAILY_MESSAGE_LIMIT",
    LinkedInActionType.PROFILE_VISIT: "LINKEDIN_DAILY_PROFILE_LIMIT",
}


def account_identifier(session_cookie: str) -> str:
    """Stable id for a LinkedIn account that does not expose its cookie."""
    return hashlib.sha256((session_cookie or "default").encode("utf-8")).hexdigest()


def _action(action_type: LinkedInActionType | str) -> LinkedInActionType:
    try:
        return LinkedInActionType(action_type)
    except ValueError:
        raise ValidationError(f"Unknown LinkedIn action: {action_type}") from None


class LinkedInDailyLimits:
    def __init__(
        self,
        session_factory,
        config: Settings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self.config = config
        self._clock = clock
        self.timezone = ZoneInfo(config.LINKEDIN_LIMITS_TIMEZONE)

    def limit_for(self, action_type: LinkedInActionType | str) -> int:
        return int(getattr(self.config, LIMIT_SETTINGS[_action(action_type)]))

    def today(self) -> date:
        return self._clock().astimezone(self.timezone).date()

    def resets_at(self) -> datetime:
        """Next local midnight, in UTC."""
        local_now = self._clock().astimezone(self.timezone)
        midnight = datetime.combine(local_now.date() + timedelta(days=1), time.min, self.timezone)
        return midnight.astimezone(timezone.utc)

    def _lock_usage(self, db: Session, account: str, day: date) -> LinkedInDailyUsage:
        query = (
            select(LinkedInDailyUsage)
            .where(
                LinkedInDailyUsage.account_identifier == account,
                LinkedInDailyUsage.usage_date == day,
            )
            .with_for_update()
        )
        usage = db.execute(query).scalar_one_or_none()
        if usage is not None:
            return usage
        try:
            with db.begin_nested():
                db.add(
                    LinkedInDailyUsage(
                        account_identifier=account,
                        usage_date=day,
                        connections_sent=0,
                        messages_sent=0,
                        profile_visits=0,
                    )
                )
        except IntegrityError:
            # Created concurrently; the locking read below picks it up
            pass
        return db.execute(query).scalar_one()

    def reserve(self, account: str, action_type: LinkedInActionType | str) -> int:
        """
        Count one action against today's cap.

        Returns the slots left after this one. Raises RateLimitExceeded with
        ``retry_after`` set to the next reset once the cap is reached.
        """
        action = _action(action_type)
        column = USAGE_COLUMNS[action]
        limit = self.limit_for(action)
        with self._session_factory() as db:
            usage = self._lock_usage(db, account, self.today())
            used = getattr(usage, column)
            if used >= limit:
                db.rollback()
                retry_after = (self.resets_at() - self._clock()).total_seconds()
                logger.warning(
                    "LinkedIn daily %s limit reached for account %s... (%s/%s)",
                    action.value,
                    account[:8],
                    used,
                    limit,
                )
                raise RateLimitExceeded(f"linkedin:{action.value}", retry_after=retry_after)
            setattr(usage, column, used + 1)
            db.commit()
        return limit - used - 1

    def release(self, account: str, action_type: LinkedInActionType | str) -> None:
        """Give back a slot taken by ``reserve`` for an action that never ran."""
        column = USAGE_COLUMNS[_action(action_type)]
        with self._session_factory() as db:
            usage = self._lock_usage(db, account, self.today())
            setattr(usage, column, max(0, getattr(usage, column) - 1))
            db.commit()

    def status(self, account: str) -> dict:
        """Today's usage per action for one account."""
        day = self.today()
        with self._session_factory() as db:
            usage = db.get(LinkedInDailyUsage, (account, day))
            actions = {}
            for action, column in USAGE_COLUMNS.items():
                used = getattr(usage, column) if usage else 0
                limit = self.limit_for(action)
                actions[action.value] = {
                    "used": used,
                    "limit": limit,
                    "remaining": max(0, limit - used),
                }
        return {
            "account": f"{account[:8]}...",
            "date": day.isoformat(),
            "resets_at": self.resets_at().isoformat(),
            "actions": actions,
        }

    def cleanup(self, days_to_keep: int | None = None) -> int:
        """Delete usage rows older than ``days_to_keep`` days."""
        keep = self.config.LINKEDIN_USAGE_RETENTION_DAYS if days_to_keep is None else days_to_keep
        cutoff = self.today() - timedelta(days=keep)
        with self._session_factory() as db:
            result = db.execute(
                delete(LinkedInDailyUsage).where(LinkedInDailyUsage.usage_date < cutoff)
            )
            db.commit()
        return result.rowcount or 0
