# models/tier_change.py
"""
TierChange model - audit trail of tier transitions.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, Text, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base


class TierChange(Base):
    __tablename__ = 'tier_changes'

    changeID = Column(Integer, primary_key=True, autoincrement=True)
    createdAt = Column(DateTime, nullable=False)

    # Relations
    memberID = Column(Integer, ForeignKey('members.memberID'), nullable=False, index=True)
    periodID = Column(String(7), nullable=True, index=True)

    # Transition
    previousTier = Column(String, nullable=True)
    newTier = Column(String, nullable=True)
    reason = Column(String, nullable=False)  # advanced, downgraded, permanent

    # Triggering stats
    activeReferrals = Column(Integer, nullable=True)
    teamVolume = Column(DECIMAL(14, 2), nullable=True)
    consecutiveMonths = Column(Integer, nullable=True)

    notes = Column(Text, nullable=True)

    member = relationship('Member', foreign_keys=[memberID])

    def __repr__(self):
        return f"<TierChange(member={self.memberID}, {self.previousTier} → {self.newTier}, {self.reason})>"
