"""
Compliance service - bounds commission payouts as a share of revenue.
Breaches are never truncated: they are raised, and recorded for review.
"""
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
from sqlalchemy.orm import Session
import logging

from config import Config
from models.compliance_violation import ComplianceViolation
from network_engine.repository import MemberRepository
from network_engine.exceptions import ComplianceCapExceeded

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class ComplianceService:
    """Revenue-percentage cap checks for transactions and periods."""

    SCOPE_TRANSACTION = "transaction"
    SCOPE_PERIOD = "period"

    def __init__(self, session: Session, repository: Optional[MemberRepository] = None):
        self.session = session
        self.repo = repository or MemberRepository(session)
        self.capPercent = Decimal(str(Config.get(Config.COMPLIANCE_CAP_PERCENT)))
        self.mode = Config.get(Config.COMPLIANCE_MODE)

    def capFor(self, revenue: Decimal) -> Decimal:
        return (revenue * self.capPercent / Decimal("100")).quantize(CENT, rounding=ROUND_HALF_UP)

    def checkCap(
            self,
            revenue: Decimal,
            commissionTotal: Decimal,
            transactionId: Optional[str] = None,
            periodId: Optional[str] = None
    ) -> None:
        """
        Raise if commissionTotal exceeds the cap on revenue.

        Raises:
            ComplianceCapExceeded: With the excess and full context
        """
        capAmount = self.capFor(revenue)
        if commissionTotal > capAmount:
            raise ComplianceCapExceeded(
                commissionTotal=commissionTotal,
                capAmount=capAmount,
                revenue=revenue,
                transactionId=transactionId,
                periodId=periodId
            )

    def recordViolation(
            self,
            error: ComplianceCapExceeded,
            scope: str,
            at: datetime,
            notes: Optional[str] = None
    ) -> ComplianceViolation:
        """Persist a breach for manual reconciliation (flushes, does not commit)."""
        violation = ComplianceViolation(
            createdAt=at,
            scope=scope,
            periodID=error.periodId,
            transactionID=error.transactionId,
            revenue=error.revenue,
            commissionTotal=error.commissionTotal,
            capPercent=self.capPercent,
            capAmount=error.capAmount,
            excessAmount=error.excessAmount,
            status="open",
            notes=notes
        )
        self.repo.addViolation(violation)

        logger.warning(
            f"Compliance cap exceeded ({scope}): total {error.commissionTotal} "
            f"> cap {error.capAmount} on revenue {error.revenue}, "
            f"excess {error.excessAmount} {error.context}"
        )
        return violation

    def checkPeriod(
            self,
            periodId: str,
            revenueStatuses,
            at: datetime
    ) -> Optional[ComplianceViolation]:
        """
        Compare all commissions of a period against the period's revenue.

        Returns:
            The recorded violation, or None when within the cap
        """
        revenue = self.repo.periodRevenue(periodId, revenueStatuses)
        total = self.repo.periodCommissionTotal(periodId)

        try:
            self.checkCap(revenue, total, periodId=periodId)
        except ComplianceCapExceeded as e:
            return self.recordViolation(e, self.SCOPE_PERIOD, at)

        logger.info(
            f"Period {periodId} within compliance cap: "
            f"commissions {total} on revenue {revenue}"
        )
        return None
