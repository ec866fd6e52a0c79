# models/matrix_position.py
"""
MatrixPosition model - placement of a member inside a sponsor-rooted,
fixed-width tree. Immutable once created.
"""
from sqlalchemy import (
    Column, Integer, Boolean, DateTime, ForeignKey, UniqueConstraint, Index
)
from models.base import Base, _get_current_time


class MatrixPosition(Base):
    __tablename__ = 'matrix_positions'
    __table_args__ = (
        # A member holds at most one position per root
        UniqueConstraint('rootSponsorID', 'memberID', name='uq_matrix_root_member'),
        # At most one occupant per slot
        UniqueConstraint('rootSponsorID', 'level', 'levelPosition', name='uq_matrix_root_slot'),
        Index('ix_matrix_parent', 'rootSponsorID', 'parentPositionID'),
    )

    positionID = Column(Integer, primary_key=True, autoincrement=True)
    memberID = Column(Integer, ForeignKey('members.memberID'), nullable=False, index=True)
    rootSponsorID = Column(Integer, ForeignKey('members.memberID'), nullable=False, index=True)

    level = Column(Integer, nullable=False)  # 1..MATRIX_MAX_LEVELS
    slotIndex = Column(Integer, nullable=False)  # 0..width-1 within parent
    levelPosition = Column(Integer, nullable=False)  # 0-based across the whole level

    # None for level 1 (parent is the root sponsor itself)
    parentPositionID = Column(Integer, ForeignKey('matrix_positions.positionID'), nullable=True)
    isSpillover = Column(Boolean, default=False, nullable=False)
    placedAt = Column(DateTime, default=_get_current_time)

    def __repr__(self):
        return (
            f"<MatrixPosition(member={self.memberID}, root={self.rootSponsorID}, "
            f"level={self.level}, slot={self.slotIndex}, spillover={self.isSpillover})>"
        )
