# mlm_settlement/services/subscription_service.py
"""
Subscription lifecycle - period extension on payment, cancellation and
expiry sweeps.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models.member import Member
from models.subscription import Subscription, SUBSCRIPTION_TYPES
from mlm_settlement.config.phases import PhaseConfig
from mlm_settlement.payments.intents import SubscriptionCommand
from mlm_settlement.services.phase_service import PhaseService, PhaseEvaluation
from mlm_settlement.utils.time_machine import timeMachine, to_naive_utc

logger = logging.getLogger(__name__)


@dataclass
class SubscriptionUpdate:
    subscription: Subscription
    becameActive: bool


@dataclass
class ExpiryResult:
    expired: List[str] = field(default_factory=list)
    phaseChanges: List[PhaseEvaluation] = field(default_factory=list)


class SubscriptionService:
    """Service for the subscription billing records."""

    def __init__(self, session: Session):
        self.session = session

    def _lockedQuery(self, memberId: str, subscriptionType: str):
        return (
            self.session.query(Subscription)
            .filter_by(memberID=memberId, subscriptionType=subscriptionType)
            .with_for_update()
            .populate_existing()
        )

    def getSubscription(self, memberId: str, subscriptionType: str = "mlm") -> Optional[Subscription]:
        return self.session.query(Subscription).filter_by(
            memberID=memberId, subscriptionType=subscriptionType
        ).first()

    def _nextPeriodEnd(self, subscription: Subscription, command: SubscriptionCommand) -> datetime:
        if command.periodEnd:
            return to_naive_utc(command.periodEnd)

        now = timeMachine.now
        start = now
        if subscription.currentPeriodEnd and subscription.currentPeriodEnd > now:
            start = subscription.currentPeriodEnd
        return start + timedelta(days=int(Config.get(Config.SUBSCRIPTION_PERIOD_DAYS)))

    async def applyPayment(self, command: SubscriptionCommand) -> SubscriptionUpdate:
        """
        Upsert the (member, type) subscription for a confirmed payment and
        extend its period. Does not commit.

        Activating one subscription type cancels an active subscription of
        the other type.
        """
        subscription = self._lockedQuery(command.memberId, command.subscriptionType).first()

        if subscription is None:
            subscription = Subscription()
            subscription.memberID = command.memberId
            subscription.subscriptionType = command.subscriptionType
            subscription.status = "unpaid"
            subscription.cancelAtPeriodEnd = False
            try:
                with self.session.begin_nested():
                    self.session.add(subscription)
                    self.session.flush()
            except IntegrityError:
                subscription = self._lockedQuery(command.memberId, command.subscriptionType).one()

        wasActive = subscription.status == "active"

        subscription.currentPeriodEnd = self._nextPeriodEnd(subscription, command)
        subscription.status = "active"
        subscription.gateway = command.gateway
        subscription.cancelAtPeriodEnd = False
        if command.planId:
            subscription.planID = command.planId

        for otherType in SUBSCRIPTION_TYPES:
            if otherType == command.subscriptionType:
                continue
            other = self._lockedQuery(command.memberId, otherType).first()
            if other and other.status == "active":
                other.status = "canceled"
                logger.info(f"Member {command.memberId}: {otherType} subscription canceled by {command.subscriptionType}")

        self.session.flush()

        logger.info(
            f"Subscription {command.subscriptionType} for {command.memberId} active until "
            f"{subscription.currentPeriodEnd.isoformat()}"
        )
        return SubscriptionUpdate(subscription=subscription, becameActive=not wasActive)

    async def cancelSubscription(self, memberId: str, subscriptionType: str = "mlm", immediately: bool = False) -> bool:
        """
        Cancel a subscription. Commits.

        By default the subscription stays active until its period ends and
        the expiry sweep closes it; immediately=True cancels now.

        Returns:
            False if the member has no such subscription
        """
        try:
            subscription = self._lockedQuery(memberId, subscriptionType).first()
            if not subscription:
                logger.warning(f"No {subscriptionType} subscription for {memberId}")
                return False

            if immediately:
                subscription.status = "canceled"
                subscription.currentPeriodEnd = timeMachine.now
            subscription.cancelAtPeriodEnd = True

            self.session.commit()
        except Exception as e:
            self.session.rollback()
            logger.error(f"Error canceling subscription for {memberId}: {e}", exc_info=True)
            raise

        logger.info(f"Subscription {subscriptionType} for {memberId} canceled (immediately={immediately})")
        return True

    async def expireSubscriptions(self, phaseConfig: PhaseConfig, now: Optional[datetime] = None) -> ExpiryResult:
        """
        Close active subscriptions whose period has ended, then re-evaluate
        the phases of the affected members and their ancestors. Commits.

        Period ended + cancelAtPeriodEnd -> canceled, otherwise past_due.

        Returns:
            ExpiryResult with the members whose subscription expired and
            the phase changes the re-evaluation caused (not yet emitted)
        """
        now = to_naive_utc(now) if now else timeMachine.now
        result = ExpiryResult()
        expired = result.expired

        try:
            due = self.session.query(Subscription).filter(
                Subscription.status == "active",
                Subscription.currentPeriodEnd.isnot(None),
                Subscription.currentPeriodEnd <= now
            ).with_for_update().all()

            for subscription in due:
                subscription.status = "canceled" if subscription.cancelAtPeriodEnd else "past_due"
                expired.append(subscription.memberID)
                logger.info(
                    f"Subscription {subscription.subscriptionType} for {subscription.memberID} "
                    f"expired -> {subscription.status}"
                )

            self.session.flush()

            phaseService = PhaseService(self.session)
            for memberId in sorted(set(expired)):
                member = self.session.query(Member).filter_by(memberID=memberId).first()
                if member:
                    evaluations = await phaseService.reevaluateAffected(member, phaseConfig)
                    result.phaseChanges.extend(e for e in evaluations if e.changed)

            self.session.commit()

        except Exception as e:
            self.session.rollback()
            logger.error(f"Subscription expiry sweep failed: {e}", exc_info=True)
            raise

        if expired:
            logger.info(f"Expired {len(expired)} subscriptions, {len(result.phaseChanges)} phase changes")
        return result
