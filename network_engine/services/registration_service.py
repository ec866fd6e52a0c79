"""
Registration service - creates members and places them in the matrix.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Session
import logging

from config import Config
from models.member import Member
from models.matrix_position import MatrixPosition
from network_engine.config.tiers import get_tier_table
from network_engine.repository import MemberRepository
from network_engine.services.placement_service import MatrixPlacementService
from network_engine.exceptions import (
    EngineError,
    MemberNotFoundError,
    InvalidSponsorError,
    MatrixFullError,
)
from network_engine.events.event_bus import eventBus, EngineEvents
from network_engine.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


@dataclass
class RegistrationResult:
    member: Member
    position: Optional[MatrixPosition] = None
    placementError: Optional[EngineError] = None

    @property
    def placed(self) -> bool:
        return self.position is not None


class RegistrationService:
    """Service for registering members under a sponsor."""

    def __init__(self, session: Session, repository: Optional[MemberRepository] = None):
        self.session = session
        self.repo = repository or MemberRepository(session)
        self.placement = MatrixPlacementService(session, self.repo)

    async def registerMember(
            self,
            memberId: int,
            sponsorId: Optional[int] = None,
            tierId: Optional[str] = None,
            joinedAt: Optional[datetime] = None,
            status: str = "active"
    ) -> RegistrationResult:
        """
        Create a member, then place it in its sponsor's matrix.

        The sponsor must already exist, which keeps the sponsorship graph a
        forest: a new member cannot be anyone's ancestor. A member registered
        without a sponsor is placed under the house account but stays a root
        of the sponsorship forest. A full matrix does not fail registration.

        Raises:
            EngineError: Duplicate member id or unknown tier
            MemberNotFoundError: Sponsor does not exist
            InvalidSponsorError: Sponsor is the member itself
        """
        if self.repo.getMember(memberId):
            raise EngineError(f"Member {memberId} already exists", memberId=memberId)

        if sponsorId is not None:
            if sponsorId == memberId:
                raise InvalidSponsorError(f"Member {memberId} cannot sponsor itself", memberId=memberId)
            if not self.repo.getMember(sponsorId):
                raise MemberNotFoundError(f"Sponsor {sponsorId} not found", memberId=memberId)

        if tierId is not None and tierId not in get_tier_table():
            raise EngineError(f"Unknown tier '{tierId}'", memberId=memberId)

        member = Member(
            memberID=memberId,
            sponsorID=sponsorId,
            tierID=tierId,
            joinedAt=joinedAt or timeMachine.now,
            status=status
        )
        try:
            self.repo.addMember(member)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info(f"Registered member {memberId} (sponsor {sponsorId}, tier {tierId})")

        result = RegistrationResult(member=member)
        await eventBus.emit(EngineEvents.MEMBER_REGISTERED, {
            "memberId": memberId,
            "sponsorId": sponsorId,
            "tierId": tierId,
        })

        # The house account is the root of its own matrix
        if sponsorId is None and memberId == Config.get(Config.DEFAULT_SPONSOR_ID):
            return result

        try:
            result.position = await self.placement.place(memberId, sponsorId)
        except MatrixFullError as e:
            logger.warning(f"Member {memberId} registered without placement: {e}")
            result.placementError = e
        except EngineError as e:
            logger.error(f"Placement failed for member {memberId}: {e} {e.context}")
            result.placementError = e

        return result
