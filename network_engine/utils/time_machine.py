# network_engine/utils/time_machine.py
"""
Engine clock and accounting period arithmetic.

Periods are calendar months named "YYYY-MM". Entry points read
timeMachine.now once and pass the value down; tests pin it with setTime().
"""
from datetime import datetime, timezone
from typing import Tuple
import logging

logger = logging.getLogger(__name__)

PERIOD_FORMAT = '%Y-%m'


def period_of(moment: datetime) -> str:
    return moment.strftime(PERIOD_FORMAT)


def period_bounds(periodId: str) -> Tuple[datetime, datetime]:
    """
    Half-open [start, end) of a period as naive UTC datetimes,
    the form DateTime columns store.

    Raises:
        ValueError: periodId is not "YYYY-MM"
    """
    start = datetime.strptime(periodId, PERIOD_FORMAT)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def previous_period(periodId: str) -> str:
    start = datetime.strptime(periodId, PERIOD_FORMAT)
    if start.month == 1:
        return start.replace(year=start.year - 1, month=12).strftime(PERIOD_FORMAT)
    return start.replace(month=start.month - 1).strftime(PERIOD_FORMAT)


class TimeMachine:
    """Process-wide clock, real by default, pinned to a fixed moment in tests."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._pinned = None
        return cls._instance

    @property
    def isVirtual(self) -> bool:
        return self._pinned is not None

    @property
    def now(self) -> datetime:
        if self._pinned is not None:
            return self._pinned
        return datetime.now(timezone.utc)

    @property
    def currentPeriod(self) -> str:
        return period_of(self.now)

    @property
    def previousPeriod(self) -> str:
        """Last period that has already ended, the one the monthly close settles."""
        return previous_period(self.currentPeriod)

    def setTime(self, moment: datetime):
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        self._pinned = moment
        logger.info(f"Clock pinned to {moment.isoformat()}")

    def resetToRealTime(self):
        self._pinned = None
        logger.info("Clock back to real time")


timeMachine = TimeMachine()
