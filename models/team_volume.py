# models/team_volume.py
"""
TeamVolume model - downline volume credited to a member for one accounting period.

One row per (member, period). Commission fan-out adds to the row of the
transaction's own period, so period close reads a value no later period can reset.
"""
from decimal import Decimal
from sqlalchemy import Column, Integer, String, DECIMAL, ForeignKey, UniqueConstraint
from models.base import Base, AuditMixin


class TeamVolume(Base, AuditMixin):
    __tablename__ = 'team_volumes'
    __table_args__ = (
        UniqueConstraint('memberID', 'periodID', name='uq_team_volume_member_period'),
    )

    volumeID = Column(Integer, primary_key=True, autoincrement=True)

    memberID = Column(Integer, ForeignKey('members.memberID'), nullable=False, index=True)
    periodID = Column(String(7), nullable=False, index=True)  # "2025-01" format

    amount = Column(DECIMAL(14, 2), nullable=False, default=Decimal("0"))
    transactionCount = Column(Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<TeamVolume(member={self.memberID}, period={self.periodID}, amount={self.amount})>"
