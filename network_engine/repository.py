# network_engine/repository.py
"""
Repository over the SQLAlchemy session.

Every engine component reads and writes through this class; a different
persistence layer only needs to provide the same methods.
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session
import logging

from models.member import Member
from models.matrix_position import MatrixPosition
from models.commission import Commission
from models.transaction import Transaction
from models.tier_qualification import TierQualification
from models.tier_change import TierChange
from models.period_stats import PeriodStats
from models.team_volume import TeamVolume
from models.compliance_violation import ComplianceViolation
from network_engine.utils.chain_walker import ChainWalker
from network_engine.utils.time_machine import period_bounds

logger = logging.getLogger(__name__)


class MemberRepository:
    """Member, sponsorship, position, commission and qualification storage."""

    def __init__(self, session: Session):
        self.session = session
        self.walker = ChainWalker(session)

    # ============================================================
    # MEMBERS & SPONSORSHIP
    # ============================================================

    def getMember(self, memberId: int) -> Optional[Member]:
        return self.session.get(Member, memberId)

    def addMember(self, member: Member) -> Member:
        self.session.add(member)
        self.session.flush()
        return member

    def getSponsorChain(self, memberId: int, maxDepth: int) -> List[Member]:
        """
        Ancestors of memberId via sponsorID, direct sponsor first.

        Stops at a root (no sponsor) or after maxDepth ancestors.
        """
        member = self.getMember(memberId)
        if not member:
            return []
        return self.walker.get_upline_chain(member, maxDepth)

    def getDirectReferrals(self, memberId: int) -> List[Member]:
        return self.session.query(Member).filter(
            Member.sponsorID == memberId
        ).order_by(Member.memberID).all()

    def countActiveReferrals(self, memberId: int) -> int:
        return self.session.query(func.count(Member.memberID)).filter(
            Member.sponsorID == memberId,
            Member.status == "active"
        ).scalar() or 0

    def listMemberIds(self, activeOnly: bool = False) -> List[int]:
        query = self.session.query(Member.memberID)
        if activeOnly:
            query = query.filter(Member.status == "active")
        return [row[0] for row in query.order_by(Member.memberID).all()]

    # ============================================================
    # TEAM VOLUME
    # ============================================================

    def getTeamVolume(self, memberId: int, periodId: str) -> Decimal:
        amount = self.session.query(TeamVolume.amount).filter_by(
            memberID=memberId,
            periodID=periodId
        ).scalar()
        return Decimal(str(amount)) if amount is not None else Decimal("0")

    def addTeamVolume(self, memberId: int, periodId: str, amount: Decimal) -> TeamVolume:
        """Credit amount to the member's volume row for periodId, creating it on first use."""
        row = self.session.query(TeamVolume).filter_by(
            memberID=memberId,
            periodID=periodId
        ).first()
        if row is None:
            row = TeamVolume(memberID=memberId, periodID=periodId, amount=Decimal("0"), transactionCount=0)
            self.session.add(row)

        row.amount = Decimal(str(row.amount or 0)) + amount
        row.transactionCount = (row.transactionCount or 0) + 1
        self.session.flush()
        return row

    # ============================================================
    # MATRIX POSITIONS
    # ============================================================

    def getPosition(self, rootSponsorId: int, memberId: int) -> Optional[MatrixPosition]:
        return self.session.query(MatrixPosition).filter_by(
            rootSponsorID=rootSponsorId,
            memberID=memberId
        ).first()

    def getPositionsForRoot(self, rootSponsorId: int) -> List[MatrixPosition]:
        """All positions of one root's tree, in (level, levelPosition) order."""
        return self.session.query(MatrixPosition).filter_by(
            rootSponsorID=rootSponsorId
        ).order_by(MatrixPosition.level, MatrixPosition.levelPosition).all()

    def addPosition(self, position: MatrixPosition) -> MatrixPosition:
        self.session.add(position)
        self.session.flush()
        return position

    # ============================================================
    # TRANSACTIONS
    # ============================================================

    def getTransaction(self, transactionId: str) -> Optional[Transaction]:
        return self.session.get(Transaction, transactionId)

    def listUnprocessedTransactionIds(self, statuses: Iterable[str], limit: int = 100) -> List[str]:
        """Commissionable transactions whose fan-out has not run yet (new or deferred)."""
        rows = self.session.query(Transaction.transactionID).filter(
            Transaction.status.in_(list(statuses)),
            Transaction.commissionsProcessedAt.is_(None),
            Transaction.commissionState.in_(["new", "deferred"])
        ).order_by(Transaction.confirmedAt, Transaction.transactionID).limit(limit).all()
        return [row[0] for row in rows]

    def periodRevenue(self, periodId: str, statuses: Iterable[str]) -> Decimal:
        """Sum of commissionable transaction amounts confirmed within periodId."""
        start, end = period_bounds(periodId)
        total = self.session.query(
            func.coalesce(func.sum(Transaction.amount), 0)
        ).filter(
            Transaction.status.in_(list(statuses)),
            Transaction.confirmedAt >= start,
            Transaction.confirmedAt < end
        ).scalar()
        return Decimal(str(total))

    # ============================================================
    # COMMISSIONS
    # ============================================================

    def getCommissionsForSource(self, sourceTransactionId: str) -> List[Commission]:
        return self.session.query(Commission).filter_by(
            sourceTransactionID=sourceTransactionId
        ).order_by(Commission.level, Commission.beneficiaryMemberID).all()

    def getCommission(self, commissionId: int) -> Optional[Commission]:
        return self.session.get(Commission, commissionId)

    def recordCommissions(self, commissions: List[Commission]) -> List[Commission]:
        """
        Idempotent upsert keyed by (sourceTransactionID, beneficiaryMemberID, level).

        Existing records are kept untouched (commissions are never recalculated);
        the returned list holds the stored record for every key.
        """
        stored = []
        for commission in commissions:
            existing = self.session.query(Commission).filter_by(
                sourceTransactionID=commission.sourceTransactionID,
                beneficiaryMemberID=commission.beneficiaryMemberID,
                level=commission.level
            ).first()

            if existing:
                logger.debug(f"Commission {commission.key} already recorded, keeping existing")
                stored.append(existing)
                continue

            self.session.add(commission)
            stored.append(commission)

        self.session.flush()
        return stored

    def periodCommissionTotal(self, periodId: str) -> Decimal:
        total = self.session.query(
            func.coalesce(func.sum(Commission.amount), 0)
        ).filter(
            Commission.periodID == periodId,
            Commission.status != "disputed"
        ).scalar()
        return Decimal(str(total))

    # ============================================================
    # TIER QUALIFICATION
    # ============================================================

    def getCurrentQualification(self, memberId: int) -> Optional[TierQualification]:
        return self.session.query(TierQualification).filter(
            TierQualification.memberID == memberId,
            TierQualification.supersededAt.is_(None)
        ).order_by(TierQualification.qualificationID.desc()).first()

    def addQualification(self, qualification: TierQualification) -> TierQualification:
        self.session.add(qualification)
        self.session.flush()
        return qualification

    def recordTierChange(
            self,
            memberId: int,
            oldTier: Optional[str],
            newTier: Optional[str],
            reason: str,
            periodId: Optional[str] = None,
            stats: Optional[Dict] = None,
            at: Optional[datetime] = None
    ) -> TierChange:
        """Tier-change sink: append an audit row for a transition."""
        stats = stats or {}
        change = TierChange(
            memberID=memberId,
            periodID=periodId,
            previousTier=oldTier,
            newTier=newTier,
            reason=reason,
            activeReferrals=stats.get("activeReferrals"),
            teamVolume=stats.get("teamVolume"),
            consecutiveMonths=stats.get("consecutiveMonths"),
            createdAt=at
        )
        self.session.add(change)
        self.session.flush()
        return change

    def getTierChanges(self, memberId: int) -> List[TierChange]:
        return self.session.query(TierChange).filter_by(
            memberID=memberId
        ).order_by(TierChange.changeID).all()

    # ============================================================
    # PERIOD STATS & COMPLIANCE
    # ============================================================

    def getPeriodStats(self, memberId: int, periodId: str) -> Optional[PeriodStats]:
        return self.session.query(PeriodStats).filter_by(
            memberID=memberId,
            periodID=periodId
        ).first()

    def addPeriodStats(self, stats: PeriodStats) -> PeriodStats:
        self.session.add(stats)
        self.session.flush()
        return stats

    def addViolation(self, violation: ComplianceViolation) -> ComplianceViolation:
        self.session.add(violation)
        self.session.flush()
        return violation

    def getOpenViolations(self, periodId: Optional[str] = None) -> List[ComplianceViolation]:
        query = self.session.query(ComplianceViolation).filter_by(status="open")
        if periodId:
            query = query.filter_by(periodID=periodId)
        return query.order_by(ComplianceViolation.violationID).all()
