# models/period_stats.py
"""
PeriodStats model - per-member statistics snapshot for one accounting period.
Source of the qualification sweep's stats.
"""
from decimal import Decimal
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, ForeignKey, UniqueConstraint
from models.base import Base, _get_current_time


class PeriodStats(Base):
    __tablename__ = 'period_stats'
    __table_args__ = (
        UniqueConstraint('memberID', 'periodID', name='uq_period_stats_member_period'),
    )

    statsID = Column(Integer, primary_key=True, autoincrement=True)
    createdAt = Column(DateTime, default=_get_current_time)

    memberID = Column(Integer, ForeignKey('members.memberID'), nullable=False, index=True)
    periodID = Column(String(7), nullable=False, index=True)  # "2025-01" format

    # Volumes
    teamVolume = Column(DECIMAL(14, 2), default=Decimal("0"))

    # Activity
    activeReferrals = Column(Integer, default=0)
    directReferrals = Column(Integer, default=0)

    # Tier at snapshot time
    tierID = Column(String, nullable=True)
    wasActive = Column(Integer, default=0)  # Boolean as Integer for SQLite

    def __repr__(self):
        return f"<PeriodStats(member={self.memberID}, period={self.periodID}, tv={self.teamVolume})>"
