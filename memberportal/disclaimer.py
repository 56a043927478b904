"""Rolling-window legal disclaimer acceptance."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .database import Database, UserNotFoundError

logger = logging.getLogger("memberportal.disclaimer")

DISCLAIMER_WINDOW = timedelta(days=90)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def needs_disclaimer(
    accepted_at: Optional[datetime],
    *,
    now: datetime,
    window: timedelta = DISCLAIMER_WINDOW,
) -> bool:
    """Return ``True`` when the disclaimer has never been accepted or has lapsed."""

    if accepted_at is None:
        return True
    if accepted_at.tzinfo is None:
        accepted_at = accepted_at.replace(tzinfo=timezone.utc)
    return now - accepted_at > window


@dataclass(frozen=True)
class DisclaimerStatus:
    needs_disclaimer: bool
    last_accepted_at: Optional[datetime]


class DisclaimerService:
    """Check and record disclaimer acceptance for a user by id or email."""

    def __init__(
        self,
        database: Database,
        *,
        window: timedelta = DISCLAIMER_WINDOW,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._database = database
        self._window = window
        self._clock = clock

    @property
    def window(self) -> timedelta:
        return self._window

    def status(self, *, user_id: Optional[str] = None, email: Optional[str] = None) -> DisclaimerStatus:
        if not user_id and not email:
            raise ValueError("User ID or email is required")
        user = self._database.find_user(user_id=user_id, email=email)
        if user is None:
            raise UserNotFoundError()
        accepted_at = user.disclaimer_accepted_at
        return DisclaimerStatus(
            needs_disclaimer=needs_disclaimer(accepted_at, now=self._clock(), window=self._window),
            last_accepted_at=accepted_at,
        )

    def accept(self, *, user_id: Optional[str] = None, email: Optional[str] = None) -> datetime:
        if not user_id and not email:
            raise ValueError("User ID or email is required")
        accepted_at = self._clock()
        if not self._database.set_disclaimer_accepted(accepted_at, user_id=user_id, email=email):
            raise UserNotFoundError()
        logger.info("Disclaimer accepted by %s at %s", user_id or email, accepted_at.isoformat())
        return accepted_at


__all__ = ["DISCLAIMER_WINDOW", "DisclaimerService", "DisclaimerStatus", "needs_disclaimer"]
