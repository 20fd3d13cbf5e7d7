# mlm_settlement/services/commission_service.py
"""
Commission calculation service - upline fan-out, seller and
affiliate-sponsor commissions.

Calculation is pure (compute_* functions over plain snapshots); the
CommissionService resolves those snapshots from the store and applies
the results to network earnings.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from typing import List, Optional, Sequence
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.member import Member
from models.phase_record import PhaseRecord
from models.commission_event import CommissionEvent
from mlm_settlement.config.phases import PhaseConfig
from mlm_settlement.errors import ConfigurationMissing
from mlm_settlement.services.ledger_service import EarningsLedger
from mlm_settlement.utils.chain_walker import ChainWalker

logger = logging.getLogger(__name__)

# Commission types
UPLINE = "upline"
AFFILIATE_SPONSOR = "affiliate_sponsor"
SELLER = "seller"

# Earnings reason per commission type
EARNING_REASON = {
    UPLINE: "commission",
    AFFILIATE_SPONSOR: "affiliate_commission",
    SELLER: "seller_commission",
}


@dataclass(frozen=True)
class UplineEntry:
    """Snapshot of one ancestor as seen by the calculator."""
    memberId: str
    level: int
    phase: int
    isActive: bool
    ecommerceRate: Optional[Decimal] = None


@dataclass(frozen=True)
class PendingCommission:
    """A computed, not yet applied, commission."""
    payerId: str
    recipientId: str
    level: int
    commissionType: str
    amountCents: int
    rate: Decimal
    recipientPhase: int
    paymentAmountCents: int


def floor_cents(amountCents: int, rate: Decimal) -> int:
    """floor(amountCents x rate). Residual cents stay with the platform."""
    value = (Decimal(int(amountCents)) * Decimal(rate)).to_integral_value(rounding=ROUND_FLOOR)
    return int(value)


def cap_distribution(pending: List[PendingCommission], paymentAmountCents: int) -> List[PendingCommission]:
    """
    Clamp a distribution so its total never exceeds the payment amount.
    Later entries are reduced first; zeroed entries are dropped.
    """
    result = []
    remaining = int(paymentAmountCents)

    for commission in pending:
        if remaining <= 0:
            logger.error(
                f"Commission to {commission.recipientId} dropped: distribution "
                f"already equals payment amount {paymentAmountCents}"
            )
            continue

        if commission.amountCents > remaining:
            logger.error(
                f"Commission to {commission.recipientId} clamped from "
                f"{commission.amountCents} to {remaining}, rates exceed 100%"
            )
            commission = PendingCommission(
                payerId=commission.payerId,
                recipientId=commission.recipientId,
                level=commission.level,
                commissionType=commission.commissionType,
                amountCents=remaining,
                rate=commission.rate,
                recipientPhase=commission.recipientPhase,
                paymentAmountCents=commission.paymentAmountCents
            )

        result.append(commission)
        remaining -= commission.amountCents

    return result


def compute_commissions(
        paymentAmountCents: int,
        buyerId: str,
        uplineChain: Sequence[UplineEntry],
        phaseConfig: PhaseConfig
) -> List[PendingCommission]:
    """
    Compute upline commissions for one payment.

    Each ancestor's own phase determines its rate. Inactive ancestors and
    zero rates emit nothing. Only the first phaseConfig.commissionDepth
    levels are paid.

    Args:
        paymentAmountCents: Paid amount in cents
        buyerId: Paying member
        uplineChain: Ancestors, level 1 first
        phaseConfig: Phase ladder snapshot

    Returns:
        Pending commissions, never totalling more than the payment
    """
    if paymentAmountCents <= 0 or not uplineChain:
        return []

    pending = []

    for entry in uplineChain[:phaseConfig.commissionDepth]:
        if not entry.isActive:
            logger.debug(f"Skipping inactive ancestor {entry.memberId} at level {entry.level}")
            continue

        rate = phaseConfig.commissionRate(entry.phase)
        if rate <= 0:
            continue

        amount = floor_cents(paymentAmountCents, rate)
        if amount <= 0:
            continue

        pending.append(PendingCommission(
            payerId=buyerId,
            recipientId=entry.memberId,
            level=entry.level,
            commissionType=UPLINE,
            amountCents=amount,
            rate=rate,
            recipientPhase=entry.phase,
            paymentAmountCents=paymentAmountCents
        ))

    return cap_distribution(pending, paymentAmountCents)


def compute_seller_commission(
        paymentAmountCents: int,
        buyerId: str,
        seller: UplineEntry,
        phaseConfig: PhaseConfig
) -> Optional[PendingCommission]:
    """
    Commission for the affiliate whose storefront made the sale.

    Rate: the seller's ecommerce override when set, otherwise the
    commission rate of the seller's phase. Inactive sellers earn nothing.
    """
    if paymentAmountCents <= 0 or not seller.isActive:
        return None

    rate = seller.ecommerceRate
    if rate is None:
        rate = phaseConfig.commissionRate(seller.phase)

    amount = floor_cents(paymentAmountCents, rate)
    if amount <= 0:
        return None

    return PendingCommission(
        payerId=buyerId,
        recipientId=seller.memberId,
        level=0,
        commissionType=SELLER,
        amountCents=min(amount, paymentAmountCents),
        rate=Decimal(rate),
        recipientPhase=seller.phase,
        paymentAmountCents=paymentAmountCents
    )


def compute_affiliate_sponsor_commission(
        paymentAmountCents: int,
        buyerId: str,
        affiliatePhase: int,
        affiliateSponsor: UplineEntry,
        phaseConfig: PhaseConfig
) -> Optional[PendingCommission]:
    """
    Single-level commission to the affiliate's own sponsor for a storefront sale.

    The rate is the affiliateSponsorRate of the affiliate's phase. Paid only
    when the sponsor is active.
    """
    if paymentAmountCents <= 0 or not affiliateSponsor.isActive:
        return None

    try:
        rate = phaseConfig.level(affiliatePhase).affiliateSponsorRate
    except ConfigurationMissing as e:
        logger.error(f"Configuration defect: {e}, affiliate sponsor rate 0")
        return None

    amount = floor_cents(paymentAmountCents, rate)
    if amount <= 0:
        return None

    return PendingCommission(
        payerId=buyerId,
        recipientId=affiliateSponsor.memberId,
        level=1,
        commissionType=AFFILIATE_SPONSOR,
        amountCents=amount,
        rate=rate,
        recipientPhase=affiliateSponsor.phase,
        paymentAmountCents=paymentAmountCents
    )


class CommissionService:
    """Resolves calculator inputs from the store and applies commissions."""

    def __init__(self, session: Session):
        self.session = session
        self.walker = ChainWalker(session)
        self.earnings = EarningsLedger(session)

    # ═══════════════════════════════════════════════════════════════════════
    # SNAPSHOTS
    # ═══════════════════════════════════════════════════════════════════════

    def getMemberPhase(self, memberId: str) -> int:
        record = self.session.query(PhaseRecord).filter_by(memberID=memberId).first()
        return record.phase if record else 0

    def snapshotMember(self, member: Member, level: int) -> UplineEntry:
        record = self.session.query(PhaseRecord).filter_by(memberID=member.memberID).first()
        ecommerceRate = member.ecommerceCommissionRate
        if ecommerceRate is None and record is not None:
            ecommerceRate = record.ecommerceCommission

        return UplineEntry(
            memberId=member.memberID,
            level=level,
            phase=record.phase if record else 0,
            isActive=self.walker.is_member_active(member.memberID),
            ecommerceRate=Decimal(str(ecommerceRate)) if ecommerceRate is not None else None
        )

    def resolveUpline(self, buyer: Member, depth: int) -> List[UplineEntry]:
        """
        Resolve the buyer's upline as calculator snapshots.

        Raises:
            UplineResolutionFailure: Cycle or store failure (fail closed)
        """
        chain = self.walker.get_upline_chain(buyer, max_depth=depth, strict=True)
        return [self.snapshotMember(member, level) for level, member in enumerate(chain, start=1)]

    # ═══════════════════════════════════════════════════════════════════════
    # CALCULATION
    # ═══════════════════════════════════════════════════════════════════════

    def computeForPayment(
            self,
            buyer: Member,
            paymentAmountCents: int,
            phaseConfig: PhaseConfig,
            sellerId: Optional[str] = None
    ) -> List[PendingCommission]:
        """
        Full distribution for one payment: upline chain, plus seller and
        affiliate-sponsor commissions for storefront sales.
        """
        upline = self.resolveUpline(buyer, phaseConfig.commissionDepth)
        pending = compute_commissions(paymentAmountCents, buyer.memberID, upline, phaseConfig)

        if sellerId and sellerId != buyer.memberID:
            seller = self.session.query(Member).filter_by(memberID=sellerId).first()
            if not seller:
                logger.warning(f"Seller {sellerId} not found, no storefront commissions")
            else:
                sellerEntry = self.snapshotMember(seller, 0)
                sellerCommission = compute_seller_commission(
                    paymentAmountCents, buyer.memberID, sellerEntry, phaseConfig
                )
                if sellerCommission:
                    pending.append(sellerCommission)

                sellerUpline = self.walker.get_upline_chain(seller, max_depth=1, strict=True)
                if sellerUpline:
                    sponsorEntry = self.snapshotMember(sellerUpline[0], 1)
                    sponsorCommission = compute_affiliate_sponsor_commission(
                        paymentAmountCents, buyer.memberID, sellerEntry.phase, sponsorEntry, phaseConfig
                    )
                    if sponsorCommission:
                        pending.append(sponsorCommission)

        return cap_distribution(pending, paymentAmountCents)

    # ═══════════════════════════════════════════════════════════════════════
    # APPLICATION
    # ═══════════════════════════════════════════════════════════════════════

    async def applyCommission(self, commission: PendingCommission, originRef: str) -> bool:
        """
        Record one CommissionEvent and credit the recipient's earnings.

        The event's unique key (origin, recipient, level, type) is the
        per-credit idempotency guard.

        Returns:
            True if credited, False if the event already existed
        """
        event = CommissionEvent()
        event.originRef = originRef
        event.payerID = commission.payerId
        event.recipientID = commission.recipientId
        event.level = commission.level
        event.commissionType = commission.commissionType
        event.amountCents = commission.amountCents
        event.rate = commission.rate
        event.recipientPhase = commission.recipientPhase
        event.paymentAmountCents = commission.paymentAmountCents

        try:
            with self.session.begin_nested():
                self.session.add(event)
                self.session.flush()
        except IntegrityError:
            logger.info(
                f"Commission {originRef} -> {commission.recipientId} "
                f"(level {commission.level}, {commission.commissionType}) already recorded"
            )
            return False

        await self.earnings.applyDelta(
            commission.recipientId,
            commission.amountCents,
            EARNING_REASON[commission.commissionType],
            idempotencyKey=(
                f"commission:{originRef}:{commission.recipientId}:"
                f"{commission.level}:{commission.commissionType}"
            ),
            externalRef=originRef,
            notes=f"Level {commission.level} {commission.commissionType} from {commission.payerId}"
        )
        return True

    async def applyCommissions(self, pending: List[PendingCommission], originRef: str) -> List[PendingCommission]:
        """Apply a distribution; returns the commissions actually credited."""
        credited = []
        for commission in pending:
            if await self.applyCommission(commission, originRef):
                credited.append(commission)

        if credited:
            total = sum(c.amountCents for c in credited)
            logger.info(f"Applied {len(credited)} commissions for {originRef}, total {total} cents")

        return credited
