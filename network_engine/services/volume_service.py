"""
Team volume service - per-period team volume, per-period stats
snapshots, and the once-per-period team-volume and leadership bonuses.
"""
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional
from sqlalchemy.orm import Session
import logging

from config import Config
from models.member import Member
from models.commission import Commission
from models.period_stats import PeriodStats
from models.transaction import Transaction
from network_engine.config.tiers import get_tier_table, InvestmentTier
from network_engine.repository import MemberRepository
from network_engine.services.compliance_service import ComplianceService
from network_engine.events.event_bus import eventBus, EngineEvents
from network_engine.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def period_source_key(periodId: str, commissionType: str, suffix: Optional[str] = None) -> str:
    """Synthetic sourceTransactionID for once-per-period bonuses."""
    key = f"period:{periodId}:{commissionType}"
    if suffix:
        key = f"{key}:{suffix}"
    return key


class VolumeService:
    """Service for team volume tracking and period bonuses."""

    def __init__(self, session: Session, repository: Optional[MemberRepository] = None):
        self.session = session
        self.repo = repository or MemberRepository(session)
        self.tiers = get_tier_table()

    def accrueTeamVolume(
            self,
            chain: List[Member],
            amount: Decimal,
            periodId: str,
            sourceId: str
    ) -> int:
        """
        Add amount to the team volume of every member in chain for periodId.

        Volume is kept per (member, period), so a transaction confirmed late
        still lands in its own period. The member's running counter follows
        the newest period it has seen and is only touched for that period.

        Returns:
            Number of members accrued
        """
        for ancestor in chain:
            self.repo.addTeamVolume(ancestor.memberID, periodId, amount)

            if ancestor.volumePeriodID is None or ancestor.volumePeriodID < periodId:
                ancestor.monthlyTeamVolume = Decimal("0")
                ancestor.volumePeriodID = periodId
            elif ancestor.volumePeriodID > periodId:
                logger.info(
                    f"Late volume from {sourceId}: {amount} credited to {periodId} "
                    f"for member {ancestor.memberID} (counter on {ancestor.volumePeriodID})"
                )
                continue

            ancestor.monthlyTeamVolume = Decimal(str(ancestor.monthlyTeamVolume or 0)) + amount

        logger.debug(f"Accrued {amount} from {sourceId} to {len(chain)} members for {periodId}")
        return len(chain)

    def snapshotMember(self, member: Member, periodId: str, at: datetime) -> PeriodStats:
        """Write (once) the member's stats for periodId."""
        existing = self.repo.getPeriodStats(member.memberID, periodId)
        if existing:
            return existing

        stats = PeriodStats(
            createdAt=at,
            memberID=member.memberID,
            periodID=periodId,
            teamVolume=self.repo.getTeamVolume(member.memberID, periodId),
            activeReferrals=self.repo.countActiveReferrals(member.memberID),
            directReferrals=len(self.repo.getDirectReferrals(member.memberID)),
            tierID=member.tierID,
            wasActive=1 if member.isActive else 0
        )
        return self.repo.addPeriodStats(stats)

    async def runTeamVolumeBonusSweep(self, periodId: str) -> Dict:
        """
        Snapshot period stats and pay period bonuses for periodId.

        Safe to re-run: snapshots and bonuses are written once per period.
        A failing member is logged and counted, never aborting the sweep.
        """
        at = timeMachine.now
        threshold = Decimal(str(Config.get(Config.TEAM_VOLUME_BONUS_THRESHOLD)))

        results = {
            "periodId": periodId,
            "snapshots": 0,
            "teamVolumeBonuses": 0,
            "leadershipBonuses": 0,
            "totalPaid": Decimal("0"),
            "errors": 0,
            "violationId": None,
        }

        logger.info(f"Starting team volume bonus sweep for {periodId}")

        for memberId in self.repo.listMemberIds():
            try:
                member = self.repo.getMember(memberId)
                stats = self.snapshotMember(member, periodId, at)
                results["snapshots"] += 1

                for commission in self._periodBonuses(member, stats, threshold, at):
                    if commission.commissionType == Commission.TYPE_TEAM_VOLUME:
                        results["teamVolumeBonuses"] += 1
                    else:
                        results["leadershipBonuses"] += 1
                    results["totalPaid"] += Decimal(str(commission.amount))

                self.session.commit()

            except Exception as e:
                self.session.rollback()
                results["errors"] += 1
                logger.error(
                    f"Error in team volume sweep for member {memberId} ({periodId}): {e}",
                    exc_info=True
                )

        compliance = ComplianceService(self.session, self.repo)
        violation = compliance.checkPeriod(periodId, Transaction.COMMISSIONABLE_STATUSES, at)
        self.session.commit()

        if violation is not None:
            results["violationId"] = violation.violationID
            await eventBus.emit(EngineEvents.COMPLIANCE_VIOLATION, {
                "violationId": violation.violationID,
                "scope": ComplianceService.SCOPE_PERIOD,
                "periodId": periodId,
                "excessAmount": violation.excessAmount,
            })

        logger.info(
            f"Team volume sweep {periodId} complete: "
            f"{results['snapshots']} snapshots, "
            f"{results['teamVolumeBonuses']} team volume bonuses, "
            f"{results['leadershipBonuses']} leadership bonuses, "
            f"total {results['totalPaid']}, {results['errors']} errors"
        )

        await eventBus.emit(EngineEvents.PERIOD_BONUSES_CALCULATED, results)
        return results

    def _periodBonuses(
            self,
            member: Member,
            stats: PeriodStats,
            threshold: Decimal,
            at: datetime
    ) -> List[Commission]:
        """Newly recorded period bonuses for one member (existing ones are not returned)."""
        teamVolume = Decimal(str(stats.teamVolume or 0))
        if not member.isActive or teamVolume < threshold:
            return []

        tier = self.tiers.get(stats.tierID) if stats.tierID else None
        if tier is None:
            if stats.tierID:
                logger.warning(f"Member {member.memberID} has unknown tier '{stats.tierID}', no period bonus")
            return []

        drafts = []
        if tier.teamVolumeBonusRate > 0:
            drafts.append(self._bonus(
                member, stats.periodID, tier, Commission.TYPE_TEAM_VOLUME,
                teamVolume, tier.teamVolumeBonusRate, at
            ))

        if tier.leadershipBonusRate > 0 and stats.activeReferrals >= tier.leadershipMinReferrals:
            drafts.append(self._bonus(
                member, stats.periodID, tier, Commission.TYPE_LEADERSHIP,
                teamVolume, tier.leadershipBonusRate, at
            ))

        drafts = [draft for draft in drafts if draft.amount > 0]
        stored = self.repo.recordCommissions(drafts)

        # recordCommissions hands back the existing row for keys already paid
        return [commission for commission, draft in zip(stored, drafts) if commission is draft]

    def _bonus(
            self,
            member: Member,
            periodId: str,
            tier: InvestmentTier,
            commissionType: str,
            teamVolume: Decimal,
            rate: Decimal,
            at: datetime
    ) -> Commission:
        amount = (teamVolume * rate / Decimal("100")).quantize(CENT, rounding=ROUND_HALF_UP)
        return Commission(
            beneficiaryMemberID=member.memberID,
            sourceMemberID=None,
            sourceTransactionID=period_source_key(periodId, commissionType),
            level=0,
            commissionType=commissionType,
            periodID=periodId,
            transactionAmount=teamVolume,
            baseRate=rate,
            tierMultiplier=Decimal("1"),
            performanceMultiplier=Decimal("1"),
            rawAmount=amount,
            amount=amount,
            status="pending",
            earnedAt=at
        )
