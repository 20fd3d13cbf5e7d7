# mlm_settlement/services/reconciliation_service.py
"""
Reconciliation - verify cached balances against their journals and repair
under-distributed commissions after the fact.
"""
from dataclasses import dataclass
from typing import List, Optional
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from models.commission_event import CommissionEvent
from models.member import Member
from models.network_earnings import NetworkEarnings, EarningsTxn, EARNING_REASONS
from models.payment import Payment
from models.wallet import WalletAccount, WalletTxn
from mlm_settlement.config.phases import PhaseConfig, load_phase_config
from mlm_settlement.errors import InvalidPaymentPayload
from mlm_settlement.payments.intents import (
    CheckoutCommand,
    WalletRechargeCommand,
    parse_payment_intent,
)
from mlm_settlement.services.commission_service import (
    CommissionService,
    PendingCommission,
    cap_distribution,
)

logger = logging.getLogger(__name__)


@dataclass
class BalanceMismatch:
    memberId: str
    ledger: str
    field: str
    cachedCents: int
    journalCents: int

    @property
    def differenceCents(self) -> int:
        return self.cachedCents - self.journalCents


class ReconciliationService:
    """Service for balance verification and commission repair."""

    def __init__(self, session: Session):
        self.session = session

    # ═══════════════════════════════════════════════════════════════════════
    # BALANCES
    # ═══════════════════════════════════════════════════════════════════════

    def _walletSums(self):
        rows = self.session.query(
            WalletTxn.memberID, func.coalesce(func.sum(WalletTxn.deltaCents), 0)
        ).group_by(WalletTxn.memberID).all()
        return {memberId: int(total) for memberId, total in rows}

    def _earningsSums(self):
        available = {
            memberId: int(total) for memberId, total in self.session.query(
                EarningsTxn.memberID, func.coalesce(func.sum(EarningsTxn.deltaCents), 0)
            ).group_by(EarningsTxn.memberID).all()
        }
        lifetime = {
            memberId: int(total) for memberId, total in self.session.query(
                EarningsTxn.memberID, func.coalesce(func.sum(EarningsTxn.deltaCents), 0)
            ).filter(
                EarningsTxn.deltaCents > 0,
                EarningsTxn.reason.in_(EARNING_REASONS)
            ).group_by(EarningsTxn.memberID).all()
        }
        return available, lifetime

    def verifyBalances(self) -> List[BalanceMismatch]:
        """
        Every account whose cached balance differs from SUM(journal).

        Returns:
            List of mismatches, empty when the store is consistent
        """
        mismatches = []

        walletSums = self._walletSums()
        for account in self.session.query(WalletAccount).populate_existing().all():
            journal = walletSums.get(account.memberID, 0)
            if int(account.balanceCents or 0) != journal:
                mismatches.append(BalanceMismatch(
                    account.memberID, "wallet", "balanceCents", int(account.balanceCents or 0), journal
                ))

        available, lifetime = self._earningsSums()
        for account in self.session.query(NetworkEarnings).populate_existing().all():
            journal = available.get(account.memberID, 0)
            if int(account.availableCents or 0) != journal:
                mismatches.append(BalanceMismatch(
                    account.memberID, "network_earnings", "availableCents",
                    int(account.availableCents or 0), journal
                ))
            journal = lifetime.get(account.memberID, 0)
            if int(account.lifetimeCents or 0) != journal:
                mismatches.append(BalanceMismatch(
                    account.memberID, "network_earnings", "lifetimeCents",
                    int(account.lifetimeCents or 0), journal
                ))

        if mismatches:
            logger.error(f"Balance verification: {len(mismatches)} mismatches")
            for mismatch in mismatches:
                logger.error(
                    f"  {mismatch.ledger}.{mismatch.field} member={mismatch.memberId}: "
                    f"cached={mismatch.cachedCents}, journal={mismatch.journalCents}"
                )
        else:
            logger.info("Balance verification passed: all cached balances equal their journals")

        return mismatches

    def repairBalances(self) -> int:
        """
        Rewrite every mismatched cached balance from its journal. Commits.

        Returns:
            Number of fields repaired
        """
        mismatches = self.verifyBalances()
        if not mismatches:
            return 0

        try:
            for mismatch in mismatches:
                model = WalletAccount if mismatch.ledger == "wallet" else NetworkEarnings
                self.session.query(model).filter_by(memberID=mismatch.memberId).update(
                    {mismatch.field: mismatch.journalCents}, synchronize_session="fetch"
                )
                logger.warning(
                    f"Repaired {mismatch.ledger}.{mismatch.field} for {mismatch.memberId}: "
                    f"{mismatch.cachedCents} -> {mismatch.journalCents}"
                )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        return len(mismatches)

    # ═══════════════════════════════════════════════════════════════════════
    # COMMISSIONS
    # ═══════════════════════════════════════════════════════════════════════

    async def redistributeCommissions(
            self,
            gateway: str,
            gatewayRef: str,
            phaseConfig: Optional[PhaseConfig] = None
    ) -> List[PendingCommission]:
        """
        Recompute a processed payment's commissions with the current tree and
        phases, and credit only those not yet recorded. Commits.

        The total distributed for the payment, old and new, never exceeds
        the payment amount.

        Returns:
            Commissions credited by this run

        Raises:
            InvalidPaymentPayload: Unknown payment or unusable stored payload
        """
        payment = self.session.query(Payment).filter_by(gateway=gateway, gatewayRef=gatewayRef).first()
        if not payment:
            raise InvalidPaymentPayload(f"Payment {gateway}:{gatewayRef} not found")

        command = parse_payment_intent(payment.payload or {})
        if isinstance(command, WalletRechargeCommand):
            logger.info(f"Payment {payment.originRef} is a wallet recharge, no commissions")
            return []

        buyer = self.session.query(Member).filter_by(memberID=payment.memberID).first()
        if not buyer:
            raise InvalidPaymentPayload(f"Buyer {payment.memberID} of {payment.originRef} not found")

        phaseConfig = phaseConfig or load_phase_config(self.session)
        commissions = CommissionService(self.session)

        try:
            existing = self.session.query(CommissionEvent).filter_by(originRef=payment.originRef).all()
            existingKeys = {(e.recipientID, e.level, e.commissionType) for e in existing}
            alreadyPaid = sum(int(e.amountCents) for e in existing)

            sellerId = command.sellerId if isinstance(command, CheckoutCommand) else None
            pending = commissions.computeForPayment(buyer, payment.amountCents, phaseConfig, sellerId=sellerId)
            missing = [
                c for c in pending
                if (c.recipientId, c.level, c.commissionType) not in existingKeys
            ]
            missing = cap_distribution(missing, payment.amountCents - alreadyPaid)

            credited = await commissions.applyCommissions(missing, payment.originRef)
            self.session.commit()

        except Exception:
            self.session.rollback()
            raise

        logger.info(
            f"Redistribution for {payment.originRef}: {len(existing)} existing, "
            f"{len(credited)} credited now"
        )
        return credited
