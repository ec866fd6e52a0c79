# models/transaction.py
"""
Transaction model - investment/package purchase supplied by the transaction source.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, ForeignKey
from models.base import Base, AuditMixin


class Transaction(Base, AuditMixin):
    __tablename__ = 'transactions'

    COMMISSIONABLE_STATUSES = frozenset({"confirmed", "active"})

    transactionID = Column(String, primary_key=True)
    memberID = Column(Integer, ForeignKey('members.memberID'), nullable=False, index=True)

    amount = Column(DECIMAL(14, 2), nullable=False)
    currency = Column(String(8), default="ZMW")
    transactionType = Column(String, default="package_purchase")
    status = Column(String, default="pending", index=True)  # pending, confirmed, active, failed, refunded
    confirmedAt = Column(DateTime, nullable=True)

    # Commission bookkeeping: new, deferred, processed, review
    commissionState = Column(String, default="new", index=True)
    commissionsProcessedAt = Column(DateTime, nullable=True)

    @property
    def periodID(self) -> str:
        """Accounting period of the transaction, from its confirmation time."""
        from network_engine.utils.time_machine import period_of
        return period_of(self.confirmedAt or self.createdAt)

    def __repr__(self):
        return f"<Transaction({self.transactionID}, member={self.memberID}, amount={self.amount}, status={self.status})>"
