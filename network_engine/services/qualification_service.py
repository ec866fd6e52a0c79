"""
Tier qualification service - the per-period tier state machine.

NotQualified -> Qualified(tier) -> QualifiedPermanent(tier).
Advancement is one tier per period; downgrades may drop several tiers
unless the qualification has become permanent.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Optional
from sqlalchemy.orm import Session
import logging

from config import Config
from models.member import Member
from models.commission import Commission
from models.tier_qualification import TierQualification
from network_engine.config.tiers import get_tier_table, InvestmentTier
from network_engine.repository import MemberRepository
from network_engine.services.stats_provider import StatsProvider, MemberStats
from network_engine.services.volume_service import period_source_key
from network_engine.exceptions import (
    EngineError,
    MemberNotFoundError,
    StatsUnavailableError,
)
from network_engine.events.event_bus import eventBus, EngineEvents
from network_engine.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


@dataclass
class TierChangeResult:
    memberId: int
    periodId: str
    previousTier: Optional[str]
    newTier: Optional[str]
    action: str  # advanced, maintained, permanent, held, downgraded, unchanged, already_evaluated
    consecutiveMonths: int = 0
    isPermanent: bool = False
    achievementBonus: Optional[Commission] = None

    @property
    def changed(self) -> bool:
        return self.previousTier != self.newTier


class TierQualificationService:
    """Service for evaluating member tiers once per accounting period."""

    def __init__(
            self,
            session: Session,
            repository: Optional[MemberRepository] = None,
            statsProviderFactory: Callable[[Callable[[], Session]], StatsProvider] = StatsProvider,
            sessionFactory: Optional[Callable[[], Session]] = None
    ):
        if sessionFactory is None:
            from core.db import get_session
            sessionFactory = get_session

        self.session = session
        self.repo = repository or MemberRepository(session)
        self.sessionFactory = sessionFactory
        self.statsProviderFactory = statsProviderFactory
        self.statsProvider = statsProviderFactory(sessionFactory)
        self.tiers = get_tier_table()
        self.permanenceThreshold = Config.get(Config.PERMANENCE_THRESHOLD_MONTHS)

    async def evaluate(self, memberId: int, periodId: str) -> TierChangeResult:
        """
        Evaluate one member for periodId and apply the resulting transition.

        Re-evaluating a period already evaluated for the member is a no-op.

        Raises:
            MemberNotFoundError: Unknown member
            StatsUnavailableError: Stats missing, corrupt or timed out
        """
        evaluatedAt = timeMachine.now

        member = self.repo.getMember(memberId)
        if not member:
            raise MemberNotFoundError(f"Member {memberId} not found", memberId=memberId, periodId=periodId)

        qualification = self.repo.getCurrentQualification(memberId)
        if self._alreadyEvaluated(memberId, periodId, qualification):
            logger.debug(f"Member {memberId} already evaluated for {periodId}")
            return TierChangeResult(
                memberId=memberId,
                periodId=periodId,
                previousTier=member.tierID,
                newTier=member.tierID,
                action="already_evaluated",
                consecutiveMonths=qualification.consecutiveMonths if qualification else 0,
                isPermanent=bool(qualification and qualification.isPermanent)
            )

        stats = await self.statsProvider.getStats(memberId, periodId)

        # Write block: no await until the commit
        try:
            result = self._applyTransition(member, qualification, stats, periodId, evaluatedAt)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        if result.action in ("advanced", "downgraded", "permanent"):
            logger.info(
                f"Member {memberId} {result.action} for {periodId}: "
                f"{result.previousTier} → {result.newTier}"
            )
            await eventBus.emit(EngineEvents.TIER_CHANGED, {
                "memberId": memberId,
                "periodId": periodId,
                "previousTier": result.previousTier,
                "newTier": result.newTier,
                "reason": result.action,
                "isPermanent": result.isPermanent,
            })

        return result

    def _alreadyEvaluated(
            self,
            memberId: int,
            periodId: str,
            qualification: Optional[TierQualification]
    ) -> bool:
        if qualification and qualification.lastPeriodID == periodId:
            return True
        return any(change.periodID == periodId for change in self.repo.getTierChanges(memberId))

    def _highestMet(self, stats: MemberStats, ceilingIndex: int) -> int:
        """Index of the highest tier met at or below ceilingIndex, -1 if none."""
        for index in range(ceilingIndex, -1, -1):
            if self.tiers.at(index).isMetBy(stats.activeReferrals, stats.teamVolume):
                return index
        return -1

    def _applyTransition(
            self,
            member: Member,
            qualification: Optional[TierQualification],
            stats: MemberStats,
            periodId: str,
            evaluatedAt: datetime
    ) -> TierChangeResult:
        try:
            currentIndex = self.tiers.indexOf(member.tierID)
        except KeyError:
            raise EngineError(
                f"Member {member.memberID} holds unknown tier '{member.tierID}'",
                memberId=member.memberID,
                periodId=periodId
            )

        ceilingIndex = min(currentIndex + 1, len(self.tiers) - 1)
        targetIndex = self._highestMet(stats, ceilingIndex)
        previousTier = member.tierID

        result = TierChangeResult(
            memberId=member.memberID,
            periodId=periodId,
            previousTier=previousTier,
            newTier=previousTier,
            action="unchanged"
        )

        if targetIndex > currentIndex:
            tier = self.tiers.at(currentIndex + 1)
            newQualification = self._replaceQualification(member, qualification, tier, stats, periodId, evaluatedAt)
            self._recordChange(member, previousTier, tier.tierID, "advanced", stats, newQualification, periodId, evaluatedAt)
            result.newTier = tier.tierID
            result.action = "advanced"
            result.consecutiveMonths = newQualification.consecutiveMonths
            result.achievementBonus = self._payAchievementBonus(member, tier, periodId, evaluatedAt)
            return result

        if currentIndex < 0:
            # NotQualified and still below the entry tier
            return result

        if targetIndex == currentIndex:
            if qualification is None:
                qualification = self._replaceQualification(
                    member, None, self.tiers.at(currentIndex), stats, periodId, evaluatedAt
                )
            else:
                qualification.consecutiveMonths = (qualification.consecutiveMonths or 0) + 1
                self._touch(qualification, stats, periodId, evaluatedAt)

            result.action = "maintained"
            if not qualification.isPermanent and qualification.consecutiveMonths >= self.permanenceThreshold:
                qualification.isPermanent = True
                self._recordChange(member, previousTier, previousTier, "permanent", stats, qualification, periodId, evaluatedAt)
                result.action = "permanent"

            result.consecutiveMonths = qualification.consecutiveMonths
            result.isPermanent = qualification.isPermanent
            return result

        if qualification is not None and qualification.isPermanent:
            self._touch(qualification, stats, periodId, evaluatedAt)
            logger.info(
                f"Member {member.memberID} below {previousTier} bar in {periodId}, "
                f"held by permanent status"
            )
            result.action = "held"
            result.consecutiveMonths = qualification.consecutiveMonths
            result.isPermanent = True
            return result

        # Downgrade to the highest tier met now, possibly several steps
        tier = self.tiers.at(targetIndex)
        newTierId = tier.tierID if tier else None
        if tier is not None:
            newQualification = self._replaceQualification(member, qualification, tier, stats, periodId, evaluatedAt)
        else:
            if qualification is not None:
                qualification.supersededAt = evaluatedAt
            member.tierID = None
            newQualification = None

        self._recordChange(member, previousTier, newTierId, "downgraded", stats, newQualification, periodId, evaluatedAt)
        result.newTier = newTierId
        result.action = "downgraded"
        result.consecutiveMonths = newQualification.consecutiveMonths if newQualification else 0
        return result

    def _touch(self, qualification: TierQualification, stats: MemberStats, periodId: str, evaluatedAt: datetime):
        qualification.activeReferrals = stats.activeReferrals
        qualification.teamVolume = stats.teamVolume
        qualification.lastPeriodID = periodId
        qualification.evaluatedAt = evaluatedAt

    def _replaceQualification(
            self,
            member: Member,
            previous: Optional[TierQualification],
            tier: InvestmentTier,
            stats: MemberStats,
            periodId: str,
            evaluatedAt: datetime
    ) -> TierQualification:
        """Supersede the previous row and start a new one at consecutiveMonths=1."""
        if previous is not None:
            previous.supersededAt = evaluatedAt

        member.tierID = tier.tierID
        qualification = TierQualification(
            memberID=member.memberID,
            tierID=tier.tierID,
            activeReferrals=stats.activeReferrals,
            teamVolume=stats.teamVolume,
            consecutiveMonths=1,
            isPermanent=False,
            evaluatedAt=evaluatedAt,
            lastPeriodID=periodId
        )
        return self.repo.addQualification(qualification)

    def _recordChange(
            self,
            member: Member,
            previousTier: Optional[str],
            newTier: Optional[str],
            reason: str,
            stats: MemberStats,
            qualification: Optional[TierQualification],
            periodId: str,
            evaluatedAt: datetime
    ):
        changeStats = stats.asDict()
        changeStats["consecutiveMonths"] = qualification.consecutiveMonths if qualification else 0
        self.repo.recordTierChange(
            member.memberID, previousTier, newTier, reason,
            periodId=periodId, stats=changeStats, at=evaluatedAt
        )

    def _payAchievementBonus(
            self,
            member: Member,
            tier: InvestmentTier,
            periodId: str,
            earnedAt: datetime
    ) -> Optional[Commission]:
        if tier.achievementBonus <= 0:
            return None

        bonus = Commission(
            beneficiaryMemberID=member.memberID,
            sourceMemberID=None,
            sourceTransactionID=period_source_key(periodId, Commission.TYPE_ACHIEVEMENT, tier.tierID),
            level=0,
            commissionType=Commission.TYPE_ACHIEVEMENT,
            periodID=periodId,
            transactionAmount=tier.achievementBonus,
            baseRate=Decimal("100"),
            tierMultiplier=Decimal("1"),
            performanceMultiplier=Decimal("1"),
            rawAmount=tier.achievementBonus,
            amount=tier.achievementBonus,
            status="pending",
            earnedAt=earnedAt
        )
        stored = self.repo.recordCommissions([bonus])[0]
        logger.info(f"Achievement bonus {stored.amount} for member {member.memberID} reaching {tier.tierID}")
        return stored

    # ============================================================
    # BATCH SWEEP
    # ============================================================

    async def runTierEvaluationSweep(self, periodId: str) -> Dict:
        """
        Evaluate every member for periodId in a bounded worker pool.

        Each member runs in its own session. A member whose stats are
        unavailable is skipped; any other failure is logged and counted.
        Neither aborts the sweep.
        """
        memberIds = self.repo.listMemberIds()
        semaphore = asyncio.Semaphore(Config.get(Config.SWEEP_WORKERS))

        results = {
            "periodId": periodId,
            "evaluated": 0,
            "advanced": 0,
            "maintained": 0,
            "permanent": 0,
            "held": 0,
            "downgraded": 0,
            "unchanged": 0,
            "already_evaluated": 0,
            "skipped": 0,
            "errors": 0,
            "failedMembers": [],
        }

        logger.info(f"Starting tier evaluation sweep for {periodId}: {len(memberIds)} members")

        async def evaluateOne(memberId: int):
            async with semaphore:
                session = self.sessionFactory()
                try:
                    service = TierQualificationService(
                        session,
                        statsProviderFactory=self.statsProviderFactory,
                        sessionFactory=self.sessionFactory
                    )
                    result = await service.evaluate(memberId, periodId)
                    results["evaluated"] += 1
                    results[result.action] += 1

                except StatsUnavailableError as e:
                    results["skipped"] += 1
                    results["failedMembers"].append({"memberId": memberId, "error": str(e)})
                    logger.warning(f"Skipping member {memberId} for {periodId}: {e}")

                except Exception as e:
                    results["errors"] += 1
                    results["failedMembers"].append({"memberId": memberId, "error": str(e)})
                    logger.error(
                        f"Error evaluating member {memberId} for {periodId}: {e}",
                        exc_info=True
                    )

                finally:
                    session.close()

        await asyncio.gather(*(evaluateOne(memberId) for memberId in memberIds))

        logger.info(
            f"Tier evaluation sweep {periodId} complete: "
            f"{results['evaluated']} evaluated, {results['advanced']} advanced, "
            f"{results['downgraded']} downgraded, {results['skipped']} skipped, "
            f"{results['errors']} errors"
        )
        return results
