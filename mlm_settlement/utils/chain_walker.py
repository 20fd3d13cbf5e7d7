# mlm_settlement/utils/chain_walker.py
"""
Safe referral tree walking utilities.
Prevents infinite loops on sponsor cycles and bounds every walk by depth.
"""
from typing import Optional, Callable, Set, List
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.member import Member
from models.subscription import Subscription
from mlm_settlement.errors import UplineResolutionFailure

logger = logging.getLogger(__name__)


def active_member_ids_query(session: Session):
    """Subquery of member IDs holding at least one active subscription."""
    return session.query(Subscription.memberID).filter(
        Subscription.status == "active"
    )


class ChainWalker:
    """
    Safe utilities for walking upline/downline chains.

    Cycles and dangling sponsor references truncate the walk. With
    strict=True they raise UplineResolutionFailure instead, which is what
    settlement uses: no commission is distributed over a broken chain.
    """

    def __init__(self, session: Session):
        self.session = session

    def is_member_active(self, memberId: str) -> bool:
        """Active member = any subscription with status 'active'."""
        return self.session.query(
            active_member_ids_query(self.session)
            .filter(Subscription.memberID == memberId)
            .exists()
        ).scalar()

    def walk_upline(
            self,
            start_member: Member,
            callback: Callable[[Member, int], bool],
            max_depth: int = 50,
            strict: bool = False
    ) -> int:
        """
        Walk up the sponsor chain, calling callback for each ancestor.

        Args:
            start_member: Starting member (not passed to callback)
            callback: Function(member, level) -> continue_walking (bool)
            max_depth: Maximum number of ancestors visited
            strict: Raise instead of truncating on a broken chain

        Returns:
            Number of ancestors processed

        Raises:
            UplineResolutionFailure: strict mode, cycle or store failure
        """
        current = start_member
        level = 1
        processed = 0
        visited = {start_member.memberID}

        try:
            while current.sponsorID and level <= max_depth:
                # Check for cycles
                if current.sponsorID in visited:
                    logger.error(
                        f"Cycle detected in upline of {start_member.memberID} "
                        f"at {current.memberID} -> {current.sponsorID}"
                    )
                    if strict:
                        raise UplineResolutionFailure(
                            start_member.memberID,
                            f"cycle at {current.memberID} -> {current.sponsorID}"
                        )
                    break

                sponsor = self.session.query(Member).filter_by(
                    memberID=current.sponsorID
                ).first()

                if not sponsor:
                    logger.warning(
                        f"Sponsor not found: memberID={current.sponsorID} "
                        f"for member {current.memberID}"
                    )
                    if strict:
                        raise UplineResolutionFailure(
                            start_member.memberID,
                            f"sponsor {current.sponsorID} does not exist"
                        )
                    break

                visited.add(sponsor.memberID)

                should_continue = callback(sponsor, level)
                processed += 1

                if not should_continue:
                    break

                current = sponsor
                level += 1

        except SQLAlchemyError as e:
            logger.error(f"Store failure while walking upline of {start_member.memberID}: {e}")
            raise UplineResolutionFailure(start_member.memberID, f"store failure: {e}")

        return processed

    def walk_downline(
            self,
            start_member: Member,
            callback: Callable[[Member, int], None],
            max_depth: int = 50,
            visited: Optional[Set[str]] = None,
            _level: int = 1
    ) -> int:
        """
        Walk down the referral tree recursively.

        Args:
            start_member: Starting member (not passed to callback)
            callback: Function(member, level) where level 1 = direct referral
            max_depth: Number of levels below start_member to visit
            visited: Set of visited member IDs (for cycle detection)

        Returns:
            Total number of members processed
        """
        if visited is None:
            visited = set()

        if max_depth <= 0:
            return 0

        if start_member.memberID in visited:
            logger.error(f"Cycle detected in downline at member {start_member.memberID}")
            return 0

        visited.add(start_member.memberID)

        referrals = self.session.query(Member).filter(
            Member.sponsorID == start_member.memberID
        ).all()

        processed = 0

        for referral in referrals:
            if referral.memberID in visited:
                logger.error(f"Cycle detected in downline at member {referral.memberID}")
                continue

            callback(referral, _level)
            processed += 1

            processed += self.walk_downline(
                referral,
                callback,
                max_depth - 1,
                visited,
                _level + 1
            )

        return processed

    def get_upline_chain(self, member: Member, max_depth: int = 50, strict: bool = False) -> List[Member]:
        """
        Get ordered list of ancestors: index 0 = direct sponsor (level 1).

        Returns an empty list when the member has no sponsor.
        """
        chain = []

        def collect(sponsor, level):
            chain.append(sponsor)
            return True

        self.walk_upline(member, collect, max_depth, strict=strict)
        return chain

    def count_active_direct(self, member: Member) -> int:
        """Count direct referrals with an active subscription."""
        return self.session.query(Member).filter(
            Member.sponsorID == member.memberID,
            Member.memberID.in_(active_member_ids_query(self.session))
        ).count()

    def count_active_downline(self, member: Member, max_depth: int = 50) -> int:
        """
        Count active members in the downline, down to max_depth levels.

        Args:
            member: Starting member
            max_depth: Levels counted (1 = direct referrals only)

        Returns:
            Count of members with an active subscription
        """
        found = []

        def collect(downline_member, level):
            found.append(downline_member.memberID)

        self.walk_downline(member, collect, max_depth)
        if not found:
            return 0

        return self.session.query(Subscription.memberID).filter(
            Subscription.memberID.in_(found),
            Subscription.status == "active"
        ).distinct().count()
