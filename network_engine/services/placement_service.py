"""
Matrix placement service - assigns new members a slot in the sponsor's
fixed-width tree, with breadth-first spillover when level 1 is full.
"""
from typing import Dict, List, Optional, Tuple
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import logging

from config import Config
from models.matrix_position import MatrixPosition
from network_engine.repository import MemberRepository
from network_engine.exceptions import (
    MemberNotFoundError,
    InvalidSponsorError,
    MatrixFullError,
    PlacementConflictError,
)
from network_engine.events.event_bus import eventBus, EngineEvents
from network_engine.utils.keyed_locks import placementLocks
from network_engine.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


class MatrixPlacementService:
    """Service for placing members into sponsor-rooted matrices."""

    def __init__(self, session: Session, repository: Optional[MemberRepository] = None):
        self.session = session
        self.repo = repository or MemberRepository(session)
        self.width = Config.get(Config.MATRIX_WIDTH)
        self.maxLevels = Config.get(Config.MATRIX_MAX_LEVELS)

    async def place(self, newMemberId: int, sponsorId: Optional[int] = None) -> MatrixPosition:
        """
        Place a member in the matrix rooted at its sponsor.

        Level-1 slots are filled first in slot order. Once they are taken,
        the sponsor's tree is searched breadth-first and the member lands
        under the first position with a free child slot (spillover).

        Args:
            newMemberId: Member to place
            sponsorId: Root of the matrix, defaults to the house account

        Returns:
            The new position, or the existing one if already placed

        Raises:
            MemberNotFoundError: Member or sponsor does not exist
            InvalidSponsorError: Sponsor is inactive or is the member itself
            MatrixFullError: No open slot within the configured depth
            PlacementConflictError: Slot claims kept colliding
        """
        defaultSponsorId = Config.get(Config.DEFAULT_SPONSOR_ID)
        rootSponsorId = sponsorId if sponsorId is not None else defaultSponsorId

        if rootSponsorId == newMemberId:
            raise InvalidSponsorError(
                f"Member {newMemberId} cannot be placed under itself",
                memberId=newMemberId
            )

        if not self.repo.getMember(newMemberId):
            raise MemberNotFoundError(f"Member {newMemberId} not found", memberId=newMemberId)

        sponsor = self.repo.getMember(rootSponsorId)
        if not sponsor:
            raise MemberNotFoundError(f"Sponsor {rootSponsorId} not found", memberId=newMemberId)

        if not sponsor.isActive and rootSponsorId != defaultSponsorId:
            raise InvalidSponsorError(
                f"Sponsor {rootSponsorId} is inactive",
                memberId=newMemberId
            )

        placedAt = timeMachine.now
        maxRetries = Config.get(Config.PLACEMENT_MAX_RETRIES)

        async with placementLocks.lock(rootSponsorId):
            for attempt in range(1, maxRetries + 1):
                existing = self.repo.getPosition(rootSponsorId, newMemberId)
                if existing:
                    logger.debug(f"Member {newMemberId} already placed under {rootSponsorId}")
                    return existing

                slot = self._findOpenSlot(rootSponsorId)
                if slot is None:
                    logger.warning(
                        f"Matrix of {rootSponsorId} is full to level {self.maxLevels}, "
                        f"member {newMemberId} not placed"
                    )
                    raise MatrixFullError(newMemberId, rootSponsorId, self.maxLevels)

                parent, slotIndex = slot
                position = self._buildPosition(
                    newMemberId, rootSponsorId, parent, slotIndex, placedAt
                )

                try:
                    self.repo.addPosition(position)
                    self.session.commit()
                except IntegrityError:
                    # Slot taken by a concurrent writer: search again
                    self.session.rollback()
                    logger.warning(
                        f"Slot collision placing member {newMemberId} under {rootSponsorId} "
                        f"(attempt {attempt}/{maxRetries})"
                    )
                    continue

                logger.info(
                    f"Placed member {newMemberId} under {rootSponsorId}: "
                    f"level {position.level}, slot {position.slotIndex}"
                    f"{' (spillover)' if position.isSpillover else ''}"
                )

                await eventBus.emit(EngineEvents.MEMBER_PLACED, {
                    "memberId": newMemberId,
                    "rootSponsorId": rootSponsorId,
                    "level": position.level,
                    "slotIndex": position.slotIndex,
                    "isSpillover": position.isSpillover,
                })
                return position

        raise PlacementConflictError(newMemberId, rootSponsorId, maxRetries)

    def _findOpenSlot(self, rootSponsorId: int) -> Optional[Tuple[Optional[MatrixPosition], int]]:
        """
        Find the first open slot of a root's tree in breadth-first order.

        Returns:
            (parent position or None for level 1, slot index), or None when full
        """
        positions = self.repo.getPositionsForRoot(rootSponsorId)

        levelOneSlots = {p.slotIndex for p in positions if p.level == 1}
        for slotIndex in range(self.width):
            if slotIndex not in levelOneSlots:
                return None, slotIndex

        childSlots: Dict[int, set] = {}
        for position in positions:
            if position.parentPositionID is not None:
                childSlots.setdefault(position.parentPositionID, set()).add(position.slotIndex)

        # Positions arrive ordered by (level, levelPosition), which is BFS order
        for position in positions:
            if position.level >= self.maxLevels:
                break
            taken = childSlots.get(position.positionID, set())
            if len(taken) >= self.width:
                continue
            for slotIndex in range(self.width):
                if slotIndex not in taken:
                    return position, slotIndex

        return None

    def _buildPosition(
            self,
            memberId: int,
            rootSponsorId: int,
            parent: Optional[MatrixPosition],
            slotIndex: int,
            placedAt
    ) -> MatrixPosition:
        if parent is None:
            return MatrixPosition(
                memberID=memberId,
                rootSponsorID=rootSponsorId,
                level=1,
                slotIndex=slotIndex,
                levelPosition=slotIndex,
                parentPositionID=None,
                isSpillover=False,
                placedAt=placedAt
            )

        return MatrixPosition(
            memberID=memberId,
            rootSponsorID=rootSponsorId,
            level=parent.level + 1,
            slotIndex=slotIndex,
            levelPosition=parent.levelPosition * self.width + slotIndex,
            parentPositionID=parent.positionID,
            isSpillover=True,
            placedAt=placedAt
        )

    # ============================================================
    # READ MODELS
    # ============================================================

    def getNetworkStatistics(self, memberId: int) -> Dict:
        """
        Fill statistics of the matrix rooted at memberId.

        Returns:
            Dict with per-level counts against capacity, totals,
            spillover count and completion percentage
        """
        positions = self.repo.getPositionsForRoot(memberId)

        levels = []
        for level in range(1, self.maxLevels + 1):
            filled = sum(1 for p in positions if p.level == level)
            levels.append({
                "level": level,
                "filled": filled,
                "capacity": self.width ** level,
            })

        maxCapacity = sum(entry["capacity"] for entry in levels)
        totalPositions = len(positions)
        completion = (totalPositions / maxCapacity) * 100 if maxCapacity else 0

        return {
            "memberId": memberId,
            "levels": levels,
            "totalPositions": totalPositions,
            "maxCapacity": maxCapacity,
            "spilloverCount": sum(1 for p in positions if p.isSpillover),
            "directCount": sum(1 for p in positions if p.level == 1),
            "completionPercentage": round(completion, 2),
        }

    def getMatrixTree(self, rootSponsorId: int, maxDepth: Optional[int] = None) -> Dict:
        """Nested dict of a root's tree, children in slot order."""
        maxDepth = maxDepth or self.maxLevels
        positions = [
            p for p in self.repo.getPositionsForRoot(rootSponsorId) if p.level <= maxDepth
        ]

        children: Dict[Optional[int], List[MatrixPosition]] = {}
        for position in positions:
            children.setdefault(position.parentPositionID, []).append(position)

        def build(position: MatrixPosition) -> Dict:
            return {
                "positionId": position.positionID,
                "memberId": position.memberID,
                "level": position.level,
                "slotIndex": position.slotIndex,
                "isSpillover": position.isSpillover,
                "children": [
                    build(child)
                    for child in sorted(children.get(position.positionID, []), key=lambda c: c.slotIndex)
                ],
            }

        return {
            "memberId": rootSponsorId,
            "level": 0,
            "children": [
                build(position)
                for position in sorted(children.get(None, []), key=lambda c: c.slotIndex)
            ],
        }
