# network_engine/utils/chain_walker.py
"""
Safe sponsorship chain walking utilities.
Traversal by repeated id lookup; guards against cycles and runaway depth.
"""
from typing import Callable, List
from sqlalchemy.orm import Session
import logging

from models.member import Member

logger = logging.getLogger(__name__)


class ChainWalker:
    """
    Safe utilities for walking the sponsor (upline) chain.
    """

    def __init__(self, session: Session):
        self.session = session

    def walk_upline(
            self,
            start_member: Member,
            callback: Callable[[Member, int], bool],
            max_depth: int = 50
    ) -> int:
        """
        Safely walk up the sponsor chain, calling callback for each ancestor.

        Args:
            start_member: Starting member (not passed to callback)
            callback: Function(ancestor, level) -> continue_walking (bool),
                level 1 is the direct sponsor
            max_depth: Maximum number of ancestors to visit

        Returns:
            Number of ancestors processed
        """
        current = start_member
        level = 1
        processed = 0
        visited = {start_member.memberID}

        while current.sponsorID is not None and level <= max_depth:
            if current.sponsorID in visited:
                logger.error(
                    f"Cycle detected at member {current.memberID} "
                    f"(sponsor {current.sponsorID} already visited)"
                )
                break

            sponsor = self.session.get(Member, current.sponsorID)
            if not sponsor:
                logger.warning(
                    f"Sponsor not found: memberID={current.sponsorID} "
                    f"for member {current.memberID}"
                )
                break

            visited.add(sponsor.memberID)
            processed += 1

            if not callback(sponsor, level):
                break

            current = sponsor
            level += 1

        return processed

    def get_upline_chain(self, member: Member, max_depth: int = 50) -> List[Member]:
        """
        Get ancestors from the direct sponsor upward.

        Args:
            member: Starting member
            max_depth: Maximum number of ancestors

        Returns:
            List of members, index 0 is the direct sponsor (level 1)
        """
        chain = []

        def collect(sponsor, level):
            chain.append(sponsor)
            return True

        self.walk_upline(member, collect, max_depth)
        return chain
