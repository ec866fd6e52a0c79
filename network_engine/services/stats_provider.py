"""
Qualification stats lookup with a bounded timeout.

Lookups are blocking database reads, so they run in the default executor
on a session of their own; the timeout bounds the wait, not the thread.
"""
import asyncio
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional
from sqlalchemy.orm import Session
import logging

from config import Config
from network_engine.repository import MemberRepository
from network_engine.exceptions import StatsUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MemberStats:
    memberId: int
    periodId: str
    activeReferrals: int
    teamVolume: Decimal

    def asDict(self) -> dict:
        return {"activeReferrals": self.activeReferrals, "teamVolume": self.teamVolume}


class StatsProvider:
    """
    Reads a member's qualification stats for a period.

    Team volume comes from the period snapshot written by the team volume
    sweep; active referrals are counted from the member's direct referrals.
    """

    def __init__(
            self,
            sessionFactory: Optional[Callable[[], Session]] = None,
            timeout: Optional[float] = None,
            repositoryFactory: Callable[[Session], MemberRepository] = MemberRepository
    ):
        if sessionFactory is None:
            from core.db import get_session
            sessionFactory = get_session
        self.sessionFactory = sessionFactory
        self.repositoryFactory = repositoryFactory
        self.timeout = timeout if timeout is not None else Config.get(Config.STATS_TIMEOUT_SECONDS)

    async def getStats(self, memberId: int, periodId: str) -> MemberStats:
        """
        Raises:
            StatsUnavailableError: Snapshot missing or corrupt, or lookup timed out
        """
        loop = asyncio.get_running_loop()
        lookup = loop.run_in_executor(None, self._load, memberId, periodId)
        try:
            return await asyncio.wait_for(lookup, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Stats lookup for member {memberId} ({periodId}) timed out after {self.timeout}s")
            raise StatsUnavailableError(
                f"Stats lookup timed out after {self.timeout}s",
                memberId=memberId,
                periodId=periodId
            )

    def _load(self, memberId: int, periodId: str) -> MemberStats:
        session = self.sessionFactory()
        try:
            return self._read(self.repositoryFactory(session), memberId, periodId)
        finally:
            session.close()

    @staticmethod
    def _read(repo: MemberRepository, memberId: int, periodId: str) -> MemberStats:
        snapshot = repo.getPeriodStats(memberId, periodId)
        if snapshot is None:
            raise StatsUnavailableError(
                f"No stats snapshot for member {memberId} in {periodId}",
                memberId=memberId,
                periodId=periodId
            )

        try:
            teamVolume = Decimal(str(snapshot.teamVolume))
        except (InvalidOperation, ValueError):
            teamVolume = None
        if teamVolume is None or not teamVolume.is_finite() or teamVolume < 0:
            raise StatsUnavailableError(
                f"Corrupt team volume {snapshot.teamVolume!r} for member {memberId} in {periodId}",
                memberId=memberId,
                periodId=periodId
            )

        return MemberStats(
            memberId=memberId,
            periodId=periodId,
            activeReferrals=repo.countActiveReferrals(memberId),
            teamVolume=teamVolume
        )
