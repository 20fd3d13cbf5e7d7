# mlm_settlement/services/phase_reward_service.py
"""
Monthly phase rewards - free product and store credit buckets.

One PhaseReward row per (member, phase, month). The unique constraint makes
granting idempotent: a second grant for the same month is a no-op.
Rewards are consumed at checkout through calculateDiscount / applyReward.
"""
from dataclasses import dataclass
from typing import Optional
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.phase_record import PhaseRecord
from models.mlm.phase_reward import PhaseReward
from mlm_settlement.config.phases import PhaseConfig, PhaseLevelConfig, RewardMode
from mlm_settlement.errors import ConfigurationMissing
from mlm_settlement.services.commission_service import floor_cents
from mlm_settlement.utils.chain_walker import ChainWalker
from mlm_settlement.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiscountQuote:
    """Discount a member's active reward gives on one order."""
    rewardId: Optional[int]
    discountCents: int
    freeProductCents: int
    creditCents: int

    @property
    def usesFreeProduct(self) -> bool:
        return self.freeProductCents > 0


NO_DISCOUNT = DiscountQuote(rewardId=None, discountCents=0, freeProductCents=0, creditCents=0)


class PhaseRewardService:
    """Service for month-bucketed phase rewards."""

    def __init__(self, session: Session):
        self.session = session

    def _getBucket(self, memberId: str, phase: int, month: str, lock: bool = False) -> Optional[PhaseReward]:
        query = self.session.query(PhaseReward).filter_by(
            memberID=memberId, phase=phase, periodMonth=month
        )
        if lock:
            query = query.with_for_update().populate_existing()
        return query.first()

    def getOrCreateBucket(self, memberId: str, phase: int) -> PhaseReward:
        """Current month's reward row for (member, phase), created empty if missing."""
        month = timeMachine.currentMonth
        bucket = self._getBucket(memberId, phase, month, lock=True)
        if bucket:
            return bucket

        bucket = PhaseReward()
        bucket.memberID = memberId
        bucket.phase = phase
        bucket.periodMonth = month
        bucket.hasFreeProduct = False
        bucket.freeProductUsed = False
        bucket.creditRemainingCents = 0
        bucket.expiresAt = timeMachine.endOfMonth

        try:
            with self.session.begin_nested():
                self.session.add(bucket)
                self.session.flush()
        except IntegrityError:
            bucket = self._getBucket(memberId, phase, month, lock=True)

        return bucket

    async def grantMonthlyReward(self, memberId: str, levelConfig: PhaseLevelConfig) -> Optional[PhaseReward]:
        """
        Grant the monthly components of a phase reward for the current month.

        Returns:
            The new bucket, or None if nothing was granted (already granted
            this month, or the phase has no monthly components)
        """
        freeProduct = (
            levelConfig.freeProductRewardMode == RewardMode.MONTHLY
            and levelConfig.freeProductValueCents > 0
        )
        credit = (
            levelConfig.oneTimeCreditCents
            if levelConfig.creditRewardMode == RewardMode.MONTHLY else 0
        )

        if not freeProduct and credit <= 0:
            return None

        month = timeMachine.currentMonth
        if self._getBucket(memberId, levelConfig.phase, month) is not None:
            logger.debug(f"Monthly reward for {memberId} phase {levelConfig.phase} {month} already granted")
            return None

        bucket = PhaseReward()
        bucket.memberID = memberId
        bucket.phase = levelConfig.phase
        bucket.periodMonth = month
        bucket.hasFreeProduct = freeProduct
        bucket.freeProductUsed = False
        bucket.creditRemainingCents = credit
        bucket.expiresAt = timeMachine.endOfMonth

        try:
            with self.session.begin_nested():
                self.session.add(bucket)
                self.session.flush()
        except IntegrityError:
            logger.info(f"Monthly reward for {memberId} phase {levelConfig.phase} {month} granted concurrently")
            return None

        logger.info(
            f"Monthly reward granted: member={memberId}, phase={levelConfig.phase}, "
            f"month={month}, freeProduct={freeProduct}, credit={credit}"
        )
        return bucket

    async def grantFreeProduct(self, memberId: str, phase: int) -> PhaseReward:
        """Put a free product into the current month's bucket (one-time grants)."""
        bucket = self.getOrCreateBucket(memberId, phase)
        if not bucket.hasFreeProduct:
            bucket.hasFreeProduct = True
            bucket.freeProductUsed = False
            self.session.flush()
        return bucket

    def getActiveReward(self, memberId: str) -> Optional[PhaseReward]:
        """
        Most valuable unexpired reward of the current month, or None.
        Higher phases first.
        """
        now = timeMachine.now
        rewards = self.session.query(PhaseReward).filter(
            PhaseReward.memberID == memberId,
            PhaseReward.periodMonth == timeMachine.currentMonth
        ).order_by(PhaseReward.phase.desc()).all()

        for reward in rewards:
            if reward.expiresAt is not None and reward.expiresAt < now:
                continue
            if (reward.hasFreeProduct and not reward.freeProductUsed) or reward.creditRemainingCents > 0:
                return reward

        return None

    def calculateDiscount(
            self,
            memberId: str,
            subtotalCents: int,
            phaseConfig: PhaseConfig,
            freeProductPriceCents: Optional[int] = None
    ) -> DiscountQuote:
        """
        Discount the member's active reward gives on an order.

        Free product first (capped by its configured value), then store
        credit on what remains. Never exceeds the subtotal.
        """
        if subtotalCents <= 0:
            return NO_DISCOUNT

        reward = self.getActiveReward(memberId)
        if not reward:
            return NO_DISCOUNT

        freeProductCents = 0
        if reward.hasFreeProduct and not reward.freeProductUsed:
            try:
                value = phaseConfig.level(reward.phase).freeProductValueCents
            except ConfigurationMissing as e:
                logger.error(f"Configuration defect: {e}, free product not applied")
                value = 0
            if freeProductPriceCents is not None:
                value = min(value, freeProductPriceCents)
            freeProductCents = max(0, min(value, subtotalCents))

        creditCents = max(0, min(reward.creditRemainingCents, subtotalCents - freeProductCents))

        return DiscountQuote(
            rewardId=reward.rewardID,
            discountCents=freeProductCents + creditCents,
            freeProductCents=freeProductCents,
            creditCents=creditCents
        )

    async def applyReward(self, memberId: str, quote: DiscountQuote, orderRef: str) -> bool:
        """
        Consume a quoted discount. Commits.

        Returns:
            False when the reward changed since quoting (already used, not
            enough credit left); nothing is consumed in that case
        """
        if not quote.rewardId or quote.discountCents <= 0:
            return False

        try:
            reward = self.session.query(PhaseReward).filter_by(
                rewardID=quote.rewardId, memberID=memberId
            ).with_for_update().populate_existing().first()

            if not reward:
                logger.warning(f"Reward {quote.rewardId} not found for member {memberId}")
                self.session.rollback()
                return False

            if quote.usesFreeProduct and (not reward.hasFreeProduct or reward.freeProductUsed):
                logger.warning(f"Free product of reward {reward.rewardID} already used ({orderRef})")
                self.session.rollback()
                return False

            if quote.creditCents > reward.creditRemainingCents:
                logger.warning(
                    f"Reward {reward.rewardID} credit {reward.creditRemainingCents} "
                    f"below quoted {quote.creditCents} ({orderRef})"
                )
                self.session.rollback()
                return False

            if quote.usesFreeProduct:
                reward.freeProductUsed = True
            reward.creditRemainingCents -= quote.creditCents

            self.session.commit()

        except Exception as e:
            self.session.rollback()
            logger.error(f"Error applying reward for {memberId} ({orderRef}): {e}", exc_info=True)
            raise

        logger.info(
            f"Reward {quote.rewardId} applied to {orderRef}: discount={quote.discountCents}, "
            f"freeProduct={quote.freeProductCents}, credit={quote.creditCents}"
        )
        return True

    def calculateSubscriptionPrice(self, memberId: str, basePriceCents: int, phaseConfig: PhaseConfig) -> int:
        """Subscription price after the phase discount; the discount is floored."""
        record = self.session.query(PhaseRecord).filter_by(memberID=memberId).first()
        phase = record.phase if record else 0
        try:
            rate = phaseConfig.level(phase).subscriptionDiscountRate
        except ConfigurationMissing:
            return basePriceCents

        return basePriceCents - floor_cents(basePriceCents, rate)

    async def sweepMonthlyRewards(self, phaseConfig: PhaseConfig) -> int:
        """
        Grant this month's rewards to every active member holding a phase.
        Commits. Used by the scheduler on the first day of the month.

        Returns:
            Number of rewards granted
        """
        walker = ChainWalker(self.session)
        granted = 0

        records = self.session.query(PhaseRecord).filter(PhaseRecord.phase >= 1).all()
        for record in records:
            if not walker.is_member_active(record.memberID):
                continue
            try:
                levelConfig = phaseConfig.level(record.phase)
            except ConfigurationMissing as e:
                logger.error(f"Configuration defect: {e}, member {record.memberID} skipped")
                continue

            try:
                if await self.grantMonthlyReward(record.memberID, levelConfig):
                    granted += 1
            except Exception as e:
                logger.error(f"Monthly reward for {record.memberID} failed: {e}", exc_info=True)

        self.session.commit()
        logger.info(f"Monthly reward sweep for {timeMachine.currentMonth}: {granted} granted")
        return granted
