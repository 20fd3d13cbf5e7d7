# mlm_settlement/utils/time_machine.py
"""
Virtual time for settlement operations.

All engine code reads the clock through `timeMachine` so that tests and
support tooling can pin "now" (month buckets, period ends, reward expiry).
Datetimes are naive UTC, matching the DateTime columns of the ledger store.
"""
import calendar
import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class TimeMachine:
    """Clock with an optional frozen virtual time."""

    def __init__(self):
        self._virtualTime: Optional[datetime] = None

    @property
    def isTestMode(self) -> bool:
        return self._virtualTime is not None

    @property
    def now(self) -> datetime:
        if self._virtualTime is not None:
            return self._virtualTime
        return datetime.now(timezone.utc).replace(tzinfo=None)

    @property
    def currentMonth(self) -> str:
        """Current month bucket, e.g. '2025-01'."""
        return self.now.strftime("%Y-%m")

    @property
    def endOfMonth(self) -> datetime:
        """Last second of the current month."""
        now = self.now
        lastDay = calendar.monthrange(now.year, now.month)[1]
        return now.replace(day=lastDay, hour=23, minute=59, second=59, microsecond=0)

    def setTime(self, value: datetime) -> None:
        self._virtualTime = to_naive_utc(value)
        logger.info(f"Virtual time set to {self._virtualTime.isoformat()}")

    def resetToRealTime(self) -> None:
        self._virtualTime = None
        logger.info("Virtual time disabled, using real time")


timeMachine = TimeMachine()
