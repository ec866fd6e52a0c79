# models/member.py
"""
Member model - a participant in the network.
"""
from decimal import Decimal
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, ForeignKey
from models.base import Base, AuditMixin, _get_current_time


class Member(Base, AuditMixin):
    __tablename__ = 'members'

    memberID = Column(Integer, primary_key=True, autoincrement=False)
    sponsorID = Column(Integer, ForeignKey('members.memberID'), nullable=True, index=True)  # direct referrer
    tierID = Column(String, nullable=True, index=True)  # None = not qualified for any tier
    joinedAt = Column(DateTime, default=_get_current_time)
    status = Column(String, default="active", index=True)  # active, inactive

    # Running total for the period named by volumePeriodID ("2025-01"), reset each period.
    # Period close reads the per-period TeamVolume rows, not this counter.
    monthlyTeamVolume = Column(DECIMAL(14, 2), default=Decimal("0"))
    volumePeriodID = Column(String(7), nullable=True)

    # Trailing performance score (0..10), drives the performance multiplier
    performanceScore = Column(DECIMAL(4, 2), nullable=True)

    @property
    def isActive(self) -> bool:
        return self.status == "active"

    def __repr__(self):
        return f"<Member(memberID={self.memberID}, sponsor={self.sponsorID}, tier={self.tierID})>"
