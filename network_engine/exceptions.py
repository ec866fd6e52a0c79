# network_engine/exceptions.py
"""
Engine error taxonomy.

Member-scoped errors (placement, per-ancestor rate problems, missing stats)
are isolated by batch callers. Transaction-scoped errors abort only that
transaction's commission fan-out.
"""
from decimal import Decimal
from typing import Optional


class EngineError(Exception):
    """Base class for engine errors, carrying retry/correction context."""

    def __init__(
            self,
            message: str,
            memberId: Optional[int] = None,
            transactionId: Optional[str] = None,
            periodId: Optional[str] = None
    ):
        super().__init__(message)
        self.memberId = memberId
        self.transactionId = transactionId
        self.periodId = periodId

    @property
    def context(self) -> dict:
        return {
            "memberId": self.memberId,
            "transactionId": self.transactionId,
            "periodId": self.periodId,
        }


class MemberNotFoundError(EngineError):
    """Referenced member does not exist."""
    pass


class InvalidSponsorError(EngineError):
    """Sponsor cannot accept referrals (inactive, or would break the forest)."""
    pass


class MatrixFullError(EngineError):
    """No open slot within the configured matrix depth. Registration still succeeds."""

    def __init__(self, memberId: int, rootSponsorId: int, maxLevels: int):
        super().__init__(
            f"No open slot for member {memberId} in matrix of {rootSponsorId} "
            f"within {maxLevels} levels",
            memberId=memberId
        )
        self.rootSponsorId = rootSponsorId
        self.maxLevels = maxLevels


class InvalidTransactionStateError(EngineError):
    """Transaction is not in a commissionable state; zero commissions produced."""

    def __init__(self, transactionId: str, status: str):
        super().__init__(
            f"Transaction {transactionId} has status '{status}', not commissionable",
            transactionId=transactionId
        )
        self.status = status


class InvalidCommissionRateError(EngineError):
    """Tier has a zero or negative rate where a positive rate was required."""

    def __init__(self, memberId: int, tierId: Optional[str], level: int, rate=None,
                 transactionId: Optional[str] = None):
        super().__init__(
            f"Invalid commission rate {rate} for tier '{tierId}' at level {level} "
            f"(member {memberId})",
            memberId=memberId,
            transactionId=transactionId
        )
        self.tierId = tierId
        self.level = level
        self.rate = rate


class ComplianceCapExceeded(EngineError):
    """Aggregate commissions breach the configured revenue-percentage cap."""

    def __init__(
            self,
            commissionTotal: Decimal,
            capAmount: Decimal,
            revenue: Decimal,
            transactionId: Optional[str] = None,
            periodId: Optional[str] = None
    ):
        super().__init__(
            f"Commission total {commissionTotal} exceeds cap {capAmount} "
            f"on revenue {revenue}",
            transactionId=transactionId,
            periodId=periodId
        )
        self.commissionTotal = commissionTotal
        self.capAmount = capAmount
        self.revenue = revenue

    @property
    def excessAmount(self) -> Decimal:
        return self.commissionTotal - self.capAmount


class StatsUnavailableError(EngineError):
    """Per-member qualification data is missing, corrupt or timed out."""
    pass


class PlacementConflictError(EngineError):
    """Slot claims kept colliding with concurrent placements; safe to retry later."""

    def __init__(self, memberId: int, rootSponsorId: int, attempts: int):
        super().__init__(
            f"Placement of member {memberId} under {rootSponsorId} "
            f"collided {attempts} times",
            memberId=memberId
        )
        self.rootSponsorId = rootSponsorId
        self.attempts = attempts
