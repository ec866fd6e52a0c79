"""
Commission calculation service - multi-level referral commissions.

Walks the sponsorship chain (not the matrix) of a confirmed transaction and
pays each active ancestor at its own tier's rate for that level, scaled by
tier and performance multipliers and clamped to [floor, ceiling].
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional
from sqlalchemy.orm import Session
import logging

from config import Config
from models.member import Member
from models.commission import Commission
from models.transaction import Transaction
from models.compliance_violation import ComplianceViolation
from network_engine.config.tiers import get_tier_table, InvestmentTier
from network_engine.repository import MemberRepository
from network_engine.services.compliance_service import ComplianceService
from network_engine.services.volume_service import VolumeService
from network_engine.exceptions import (
    InvalidTransactionStateError,
    InvalidCommissionRateError,
    ComplianceCapExceeded,
    EngineError,
)
from network_engine.events.event_bus import eventBus, EngineEvents
from network_engine.utils.keyed_locks import chainLocks
from network_engine.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
COMMISSIONABLE_STATUSES = Transaction.COMMISSIONABLE_STATUSES


@dataclass
class CommissionRunResult:
    """Outcome of one transaction's commission fan-out."""
    transactionId: str
    commissions: List[Commission] = field(default_factory=list)
    skipped: List[Dict] = field(default_factory=list)
    violation: Optional[ComplianceViolation] = None
    alreadyProcessed: bool = False

    @property
    def totalAmount(self) -> Decimal:
        return sum((Decimal(str(c.amount)) for c in self.commissions), Decimal("0"))

    @property
    def needsReview(self) -> bool:
        return self.violation is not None


def performance_multiplier(score: Optional[Decimal]) -> Decimal:
    """Banded multiplier for a trailing performance score, 1.0 below every band."""
    if score is None:
        return Decimal("1")
    score = Decimal(str(score))
    for minimum, multiplier in Config.get(Config.PERFORMANCE_BANDS):
        if score >= minimum:
            return Decimal(str(multiplier))
    return Decimal("1")


def clamp_commission(rawAmount: Decimal, transactionAmount: Decimal) -> Decimal:
    """
    Clamp to [MIN_COMMISSION, MAX_COMMISSION_PERCENT of the transaction].
    When the ceiling is below the floor, the ceiling wins.
    """
    floor = Decimal(str(Config.get(Config.MIN_COMMISSION)))
    ceilingPercent = Decimal(str(Config.get(Config.MAX_COMMISSION_PERCENT)))
    ceiling = (transactionAmount * ceilingPercent / Decimal("100")).quantize(
        CENT, rounding=ROUND_HALF_UP
    )
    return min(ceiling, max(floor, rawAmount))


class CommissionService:
    """Service for calculating multi-level commissions."""

    def __init__(self, session: Session, repository: Optional[MemberRepository] = None):
        self.session = session
        self.repo = repository or MemberRepository(session)
        self.compliance = ComplianceService(session, self.repo)
        self.volumeService = VolumeService(session, self.repo)
        self.tiers = get_tier_table()

    async def processTransaction(self, transactionId: str) -> CommissionRunResult:
        """
        Load a transaction and calculate its commissions.
        Entry point for the transaction source (direct call or event).
        """
        transaction = self.repo.getTransaction(transactionId)
        if not transaction:
            raise EngineError(
                f"Transaction {transactionId} not found",
                transactionId=transactionId
            )
        return await self.calculateForTransaction(transaction)

    async def calculateForTransaction(self, transaction: Transaction) -> CommissionRunResult:
        """
        Calculate, record and commit all commissions for one transaction.

        Commissions, team volume accruals and the processed marker are
        committed together. Re-running a processed transaction returns
        its existing records.

        Raises:
            InvalidTransactionStateError: Transaction not confirmed/active
            ComplianceCapExceeded: Cap breached in "abort" compliance mode
        """
        earnedAt = timeMachine.now
        transactionId = transaction.transactionID
        result = CommissionRunResult(transactionId=transactionId)

        if transaction.commissionsProcessedAt is not None:
            result.commissions = self.repo.getCommissionsForSource(transactionId)
            result.alreadyProcessed = True
            logger.info(
                f"Transaction {transactionId} already processed, "
                f"returning {len(result.commissions)} existing commissions"
            )
            return result

        if transaction.status not in COMMISSIONABLE_STATUSES:
            transaction.commissionState = "deferred"
            self.session.commit()
            logger.warning(
                f"Transaction {transactionId} has status '{transaction.status}', "
                f"commissions deferred"
            )
            raise InvalidTransactionStateError(transactionId, transaction.status)

        amount = Decimal(str(transaction.amount))
        periodId = transaction.periodID
        commissionLevels = Config.get(Config.COMMISSION_LEVELS)
        chain = self.repo.getSponsorChain(
            transaction.memberID, Config.get(Config.MAX_CHAIN_DEPTH)
        )

        async with chainLocks.lock_many([ancestor.memberID for ancestor in chain]):
            # Write block: no await until the commit
            try:
                drafts = []
                for level, ancestor in enumerate(chain[:commissionLevels], start=1):
                    try:
                        commission = self._calculateLevel(
                            transaction, ancestor, level, amount, periodId, earnedAt, result
                        )
                    except InvalidCommissionRateError as e:
                        logger.error(f"Skipping ancestor: {e} {e.context}")
                        result.skipped.append({
                            "memberId": ancestor.memberID,
                            "level": level,
                            "reason": "invalid_rate",
                            "error": str(e),
                        })
                        continue

                    if commission is not None:
                        drafts.append(commission)

                result.commissions = self.repo.recordCommissions(drafts)
                self.volumeService.accrueTeamVolume(chain, amount, periodId, transactionId)

                try:
                    self.compliance.checkCap(
                        amount, result.totalAmount,
                        transactionId=transactionId, periodId=periodId
                    )
                    transaction.commissionState = "processed"
                except ComplianceCapExceeded as e:
                    if self.compliance.mode == "abort":
                        self.session.rollback()
                        logger.error(
                            f"Commission fan-out for {transactionId} rolled back: {e}"
                        )
                        raise
                    result.violation = self.compliance.recordViolation(
                        e, ComplianceService.SCOPE_TRANSACTION, earnedAt
                    )
                    transaction.commissionState = "review"

                transaction.commissionsProcessedAt = earnedAt
                self.session.commit()

            except ComplianceCapExceeded:
                raise
            except Exception as e:
                self.session.rollback()
                logger.error(
                    f"Error calculating commissions for transaction {transactionId}: {e}",
                    exc_info=True
                )
                raise

        logger.info(
            f"Processed transaction {transactionId}: "
            f"{len(result.commissions)} commissions, total {result.totalAmount}, "
            f"{len(result.skipped)} skipped"
        )

        await eventBus.emit(EngineEvents.COMMISSION_CALCULATED, {
            "transactionId": transactionId,
            "periodId": periodId,
            "commissionIds": [c.commissionID for c in result.commissions],
            "totalAmount": result.totalAmount,
        })
        if result.violation is not None:
            await eventBus.emit(EngineEvents.COMPLIANCE_VIOLATION, {
                "violationId": result.violation.violationID,
                "scope": ComplianceService.SCOPE_TRANSACTION,
                "transactionId": transactionId,
                "excessAmount": result.violation.excessAmount,
            })

        return result

    def _tierFor(self, ancestor: Member) -> Optional[InvestmentTier]:
        # NotQualified members earn at the entry tier's rates
        if ancestor.tierID is None:
            return self.tiers.lowest
        return self.tiers.get(ancestor.tierID)

    def _calculateLevel(
            self,
            transaction: Transaction,
            ancestor: Member,
            level: int,
            amount: Decimal,
            periodId: str,
            earnedAt: datetime,
            result: CommissionRunResult
    ) -> Optional[Commission]:
        """
        Commission for one ancestor, or None when the ancestor is not paid.

        Raises:
            InvalidCommissionRateError: Unknown tier or non-positive rate
        """
        if not ancestor.isActive:
            logger.debug(f"Ancestor {ancestor.memberID} (level {level}) inactive, skipped")
            result.skipped.append({"memberId": ancestor.memberID, "level": level, "reason": "inactive"})
            return None

        tier = self._tierFor(ancestor)
        if tier is None:
            raise InvalidCommissionRateError(
                ancestor.memberID, ancestor.tierID, level,
                transactionId=transaction.transactionID
            )

        baseRate = tier.rateForLevel(level)
        if baseRate is None:
            logger.debug(
                f"Tier {tier.tierID} of ancestor {ancestor.memberID} does not pay level {level}"
            )
            result.skipped.append({"memberId": ancestor.memberID, "level": level, "reason": "not_eligible"})
            return None

        if baseRate <= 0:
            raise InvalidCommissionRateError(
                ancestor.memberID, tier.tierID, level, rate=baseRate,
                transactionId=transaction.transactionID
            )

        perfMultiplier = performance_multiplier(ancestor.performanceScore)
        rawAmount = (
            amount * baseRate / Decimal("100") * tier.tierMultiplier * perfMultiplier
        ).quantize(CENT, rounding=ROUND_HALF_UP)

        if rawAmount <= 0:
            logger.debug(f"Commission for ancestor {ancestor.memberID} rounds to zero, skipped")
            result.skipped.append({"memberId": ancestor.memberID, "level": level, "reason": "zero_amount"})
            return None

        finalAmount = clamp_commission(rawAmount, amount)
        if finalAmount != rawAmount:
            logger.debug(f"Commission for ancestor {ancestor.memberID} clamped {rawAmount} -> {finalAmount}")

        return Commission(
            beneficiaryMemberID=ancestor.memberID,
            sourceMemberID=transaction.memberID,
            sourceTransactionID=transaction.transactionID,
            level=level,
            commissionType=Commission.TYPE_REFERRAL,
            periodID=periodId,
            transactionAmount=amount,
            baseRate=baseRate,
            tierMultiplier=tier.tierMultiplier,
            performanceMultiplier=perfMultiplier,
            rawAmount=rawAmount,
            amount=finalAmount,
            status="pending",
            earnedAt=earnedAt
        )

    async def markCommissionPaid(self, commissionId: int, paidAt: Optional[datetime] = None) -> Commission:
        """
        Move a commission from pending to paid, the only mutation allowed.

        Raises:
            EngineError: Unknown commission or not pending
        """
        commission = self.repo.getCommission(commissionId)
        if not commission:
            raise EngineError(f"Commission {commissionId} not found")

        if commission.status != "pending":
            raise EngineError(
                f"Commission {commissionId} is '{commission.status}', only pending can be paid",
                memberId=commission.beneficiaryMemberID,
                transactionId=commission.sourceTransactionID
            )

        commission.status = "paid"
        commission.paidAt = paidAt or timeMachine.now
        self.session.commit()

        logger.info(f"Commission {commissionId} marked paid ({commission.amount})")

        await eventBus.emit(EngineEvents.COMMISSION_PAID, {
            "commissionId": commissionId,
            "memberId": commission.beneficiaryMemberID,
            "amount": commission.amount,
        })
        return commission
