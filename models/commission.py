# models/commission.py
"""
Commission model - monetary credit to a member for a level-N relationship
to a transacting member, or a once-per-period bonus.

Never recalculated after creation: only status/paidAt change.
Corrections are new compensating records.
"""
from decimal import Decimal
from sqlalchemy import (
    Column, Integer, String, DECIMAL, DateTime, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin


class Commission(Base, AuditMixin):
    __tablename__ = 'commissions'
    __table_args__ = (
        UniqueConstraint(
            'sourceTransactionID', 'beneficiaryMemberID', 'level',
            name='uq_commission_source_beneficiary_level'
        ),
    )

    TYPE_REFERRAL = "referral"
    TYPE_TEAM_VOLUME = "team_volume"
    TYPE_ACHIEVEMENT = "achievement_bonus"
    TYPE_LEADERSHIP = "leadership_bonus"

    commissionID = Column(Integer, primary_key=True, autoincrement=True)

    # Relations
    beneficiaryMemberID = Column(Integer, ForeignKey('members.memberID'), nullable=False, index=True)
    sourceMemberID = Column(Integer, ForeignKey('members.memberID'), nullable=True)
    # Transaction id, or "period:<periodID>:<type>" for period bonuses
    sourceTransactionID = Column(String, nullable=False, index=True)

    level = Column(Integer, nullable=False)  # 1..commissionLevels, 0 for period bonuses
    commissionType = Column(String, nullable=False, default=TYPE_REFERRAL)
    periodID = Column(String(7), nullable=True, index=True)

    # Calculation factors, stored so the amount can be re-derived
    transactionAmount = Column(DECIMAL(14, 2), nullable=False)
    baseRate = Column(DECIMAL(8, 4), nullable=False)  # percent
    tierMultiplier = Column(DECIMAL(6, 3), nullable=False, default=Decimal("1"))
    performanceMultiplier = Column(DECIMAL(6, 3), nullable=False, default=Decimal("1"))
    rawAmount = Column(DECIMAL(14, 2), nullable=False)
    amount = Column(DECIMAL(14, 2), nullable=False)

    # Status
    status = Column(String, default="pending", index=True)  # pending, paid, disputed
    earnedAt = Column(DateTime, nullable=False)
    paidAt = Column(DateTime, nullable=True)

    beneficiary = relationship('Member', foreign_keys=[beneficiaryMemberID])

    @property
    def key(self):
        return self.sourceTransactionID, self.beneficiaryMemberID, self.level

    def __repr__(self):
        return (
            f"<Commission(id={self.commissionID}, beneficiary={self.beneficiaryMemberID}, "
            f"level={self.level}, type={self.commissionType}, amount={self.amount})>"
        )
