# mlm_settlement/services/settlement_service.py
"""
Payment settlement orchestrator - entry point for confirmed gateway payments.

Protocol (one database transaction):
    1. Claim (gateway, gatewayRef) by inserting the Payment row
    2. Debit the buyer's wallet when the wallet paid
    3. Resolve the upline and compute commissions
    4. Credit commissions to network earnings (per-event unique guard)
    5. Upsert / extend the subscription
    6. Re-evaluate phases of the buyer and their ancestors
    7. Commit, then emit events

Any failure after the claim rolls the whole transaction back, claim
included, so a gateway retry re-processes the payment from scratch.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.member import Member
from models.payment import Payment
from mlm_settlement.config.phases import PhaseConfig, load_phase_config
from mlm_settlement.errors import DuplicatePayment, InvalidPaymentPayload
from mlm_settlement.events.event_bus import eventBus, SettlementEvents
from mlm_settlement.payments.intents import (
    CheckoutCommand,
    PaymentCommand,
    SubscriptionCommand,
    WalletRechargeCommand,
    parse_payment_intent,
)
from mlm_settlement.services.commission_service import CommissionService, PendingCommission
from mlm_settlement.services.ledger_service import WalletLedger
from mlm_settlement.services.phase_service import PhaseService, PhaseEvaluation
from mlm_settlement.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


@dataclass
class SettlementResult:
    alreadyProcessed: bool
    paymentId: Optional[int] = None
    intent: Optional[str] = None
    commissions: List[PendingCommission] = field(default_factory=list)
    phaseChanges: List[PhaseEvaluation] = field(default_factory=list)

    @property
    def totalCommissionCents(self) -> int:
        return sum(c.amountCents for c in self.commissions)


class SettlementService:
    """Orchestrates settlement of one confirmed payment."""

    def __init__(self, session: Session, phaseConfig: Optional[PhaseConfig] = None):
        self.session = session
        self._phaseConfig = phaseConfig
        self.commissions = CommissionService(session)
        self.phases = PhaseService(session)
        self.subscriptions = SubscriptionService(session)
        self.wallet = WalletLedger(session)

    @property
    def phaseConfig(self) -> PhaseConfig:
        if self._phaseConfig is None:
            self._phaseConfig = load_phase_config(self.session)
        return self._phaseConfig

    # ═══════════════════════════════════════════════════════════════════════
    # ENTRY POINT
    # ═══════════════════════════════════════════════════════════════════════

    async def handleConfirmedPayment(
            self,
            payment: Union[Dict[str, Any], PaymentCommand]
    ) -> SettlementResult:
        """
        Settle a confirmed payment exactly once.

        Args:
            payment: Gateway payload dict or an already resolved command

        Returns:
            SettlementResult(alreadyProcessed=True) for a duplicate delivery,
            with no mutation performed

        Raises:
            InvalidPaymentPayload: Payload cannot be resolved, unknown buyer
            InsufficientFunds: Wallet payment exceeds the wallet balance
            UplineResolutionFailure: Broken sponsor chain (nothing applied)
        """
        command = payment if not isinstance(payment, dict) else parse_payment_intent(payment)

        buyer = self.session.query(Member).filter_by(memberID=command.memberId).first()
        if not buyer:
            raise InvalidPaymentPayload(f"Unknown member {command.memberId}")

        phaseConfig = self.phaseConfig
        logger.info(
            f"Settling {command.intent} payment {command.originRef}: member={command.memberId}, "
            f"amount={command.amountCents}, phase config v{phaseConfig.version}"
        )

        try:
            # ═══════════════════════════════════════════════════════════
            # STEP 1: Idempotency claim
            # ═══════════════════════════════════════════════════════════
            record = self._claim(command)

            result = SettlementResult(
                alreadyProcessed=False,
                paymentId=record.paymentID,
                intent=command.intent
            )

            # ═══════════════════════════════════════════════════════════
            # STEP 2: Funds from the buyer's wallet
            # ═══════════════════════════════════════════════════════════
            if command.gateway == "wallet":
                await self.wallet.applyDelta(
                    command.memberId,
                    -command.amountCents,
                    "purchase",
                    idempotencyKey=f"payment:{command.originRef}",
                    externalRef=command.gatewayRef,
                    gateway=command.gateway,
                    notes=f"{command.intent} payment"
                )

            # ═══════════════════════════════════════════════════════════
            # STEPS 3-6: Intent-specific settlement
            # ═══════════════════════════════════════════════════════════
            if isinstance(command, WalletRechargeCommand):
                await self._settleWalletRecharge(command)
            elif isinstance(command, SubscriptionCommand):
                await self._settleSubscription(command, buyer, phaseConfig, result)
            elif isinstance(command, CheckoutCommand):
                await self._settleCheckout(command, buyer, phaseConfig, result)

            # ═══════════════════════════════════════════════════════════
            # STEP 7: Commit
            # ═══════════════════════════════════════════════════════════
            self.session.commit()

        except DuplicatePayment as e:
            self.session.rollback()
            logger.info(f"{e}, skipping")
            return SettlementResult(alreadyProcessed=True, intent=command.intent)

        except Exception as e:
            self.session.rollback()
            logger.error(f"Settlement of {command.originRef} failed, rolled back: {e}", exc_info=True)
            raise

        logger.info(
            f"Payment {command.originRef} settled: {len(result.commissions)} commissions, "
            f"{result.totalCommissionCents} cents, {len(result.phaseChanges)} phase changes"
        )

        await self._emitEvents(command, result)
        return result

    # ═══════════════════════════════════════════════════════════════════════
    # STEPS
    # ═══════════════════════════════════════════════════════════════════════

    def _claim(self, command: PaymentCommand) -> Payment:
        """
        Insert the Payment row. The store's unique (gateway, gatewayRef)
        key decides the winner between concurrent deliveries.

        Raises:
            DuplicatePayment: The key already exists
        """
        record = Payment()
        record.memberID = command.memberId
        record.gateway = command.gateway
        record.gatewayRef = command.gatewayRef
        record.intent = command.intent
        record.amountCents = command.amountCents
        record.status = "processed"
        record.periodEnd = getattr(command, "periodEnd", None)
        record.payload = command.toPayload()

        try:
            with self.session.begin_nested():
                self.session.add(record)
                self.session.flush()
        except IntegrityError:
            raise DuplicatePayment(command.gateway, command.gatewayRef)

        return record

    async def _settleWalletRecharge(self, command: WalletRechargeCommand) -> None:
        await self.wallet.applyDelta(
            command.memberId,
            command.amountCents,
            "recharge",
            idempotencyKey=f"recharge:{command.originRef}",
            externalRef=command.gatewayRef,
            gateway=command.gateway,
            notes="Wallet recharge"
        )

    async def _settleSubscription(
            self,
            command: SubscriptionCommand,
            buyer: Member,
            phaseConfig: PhaseConfig,
            result: SettlementResult
    ) -> None:
        pending = self.commissions.computeForPayment(buyer, command.amountCents, phaseConfig)
        result.commissions = await self.commissions.applyCommissions(pending, command.originRef)

        update = await self.subscriptions.applyPayment(command)

        # Team composition changes only when the buyer turns active
        if update.becameActive:
            evaluations = await self.phases.reevaluateAffected(buyer, phaseConfig)
            result.phaseChanges = [e for e in evaluations if e.changed]

    async def _settleCheckout(
            self,
            command: CheckoutCommand,
            buyer: Member,
            phaseConfig: PhaseConfig,
            result: SettlementResult
    ) -> None:
        pending = self.commissions.computeForPayment(
            buyer, command.amountCents, phaseConfig, sellerId=command.sellerId
        )
        result.commissions = await self.commissions.applyCommissions(pending, command.originRef)

    # ═══════════════════════════════════════════════════════════════════════
    # EVENTS
    # ═══════════════════════════════════════════════════════════════════════

    async def _emitEvents(self, command: PaymentCommand, result: SettlementResult) -> None:
        await eventBus.emit(SettlementEvents.PAYMENT_SETTLED, {
            "paymentId": result.paymentId,
            "memberId": command.memberId,
            "intent": command.intent,
            "amountCents": command.amountCents,
            "commissions": [
                {"recipientId": c.recipientId, "amountCents": c.amountCents, "level": c.level}
                for c in result.commissions
            ],
        })

        for change in result.phaseChanges:
            await eventBus.emit(SettlementEvents.PHASE_CHANGED, {
                "memberId": change.memberId,
                "previousPhase": change.previousPhase,
                "newPhase": change.newPhase,
                "rewardsGranted": list(change.rewardsGranted),
            })
