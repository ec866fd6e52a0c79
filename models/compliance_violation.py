# models/compliance_violation.py
"""
ComplianceViolation model - commission totals over the revenue cap,
kept open for manual reconciliation.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, Text
from models.base import Base


class ComplianceViolation(Base):
    __tablename__ = 'compliance_violations'

    violationID = Column(Integer, primary_key=True, autoincrement=True)
    createdAt = Column(DateTime, nullable=False)

    scope = Column(String, nullable=False)  # transaction, period
    periodID = Column(String(7), nullable=True, index=True)
    transactionID = Column(String, nullable=True, index=True)

    revenue = Column(DECIMAL(14, 2), nullable=False)
    commissionTotal = Column(DECIMAL(14, 2), nullable=False)
    capPercent = Column(DECIMAL(6, 2), nullable=False)
    capAmount = Column(DECIMAL(14, 2), nullable=False)
    excessAmount = Column(DECIMAL(14, 2), nullable=False)

    status = Column(String, default="open", index=True)  # open, resolved
    notes = Column(Text, nullable=True)

    def __repr__(self):
        return (
            f"<ComplianceViolation(scope={self.scope}, period={self.periodID}, "
            f"tx={self.transactionID}, excess={self.excessAmount})>"
        )
