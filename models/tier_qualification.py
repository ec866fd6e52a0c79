# models/tier_qualification.py
"""
TierQualification model - rolling evidence of a member meeting a tier's bar.
One row per member per tier achieved; superseded (never deleted) on tier change.
"""
from decimal import Decimal
from sqlalchemy import Column, Integer, String, DECIMAL, Boolean, DateTime, ForeignKey
from models.base import Base


class TierQualification(Base):
    __tablename__ = 'tier_qualifications'

    qualificationID = Column(Integer, primary_key=True, autoincrement=True)
    memberID = Column(Integer, ForeignKey('members.memberID'), nullable=False, index=True)
    tierID = Column(String, nullable=False)

    # Stats at last evaluation
    activeReferrals = Column(Integer, default=0)
    teamVolume = Column(DECIMAL(14, 2), default=Decimal("0"))

    consecutiveMonths = Column(Integer, default=0)
    isPermanent = Column(Boolean, default=False, nullable=False)

    evaluatedAt = Column(DateTime, nullable=True)
    lastPeriodID = Column(String(7), nullable=True)
    supersededAt = Column(DateTime, nullable=True)

    def __repr__(self):
        return (
            f"<TierQualification(member={self.memberID}, tier={self.tierID}, "
            f"months={self.consecutiveMonths}, permanent={self.isPermanent})>"
        )
