# mlm_settlement/services/payout_service.py
"""
Payout service - earnings to wallet transfers and external auto-payouts.

Auto-payout never finalizes a debit against an unconfirmed transfer:
    1. Payout row 'pending' + earnings debit ('payout_hold'), committed
    2. Provider call, bounded by PAYOUT_PROVIDER_TIMEOUT
    3a. Success -> 'completed'
    3b. Failure/timeout -> compensating credit ('payout_reversal') + 'failed'
A payout left 'pending' (process died between 1 and 3) is resolved with
confirmPayout / failPayout.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional
import logging
import uuid

from sqlalchemy.orm import Session

from config import Config
from models.network_earnings import NetworkEarnings
from models.payout import Payout, PayoutAccount, PayoutPreference, PAYOUT_PROVIDERS
from mlm_settlement.errors import ExternalProviderFailure, PayoutNotAllowed
from mlm_settlement.events.event_bus import eventBus, SettlementEvents
from mlm_settlement.providers import PayoutProvider, get_payout_provider
from mlm_settlement.services.ledger_service import EarningsLedger, WalletLedger
from mlm_settlement.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


@dataclass
class TransferResult:
    success: bool
    amountCents: int
    earningsBalanceCents: int
    walletBalanceCents: int
    reference: str


@dataclass
class AutoPayoutResult:
    processed: bool
    amountCents: Optional[int] = None
    payoutId: Optional[int] = None
    provider: Optional[str] = None
    reason: Optional[str] = None


class PayoutService:
    """Service for moving network earnings out of the earnings ledger."""

    def __init__(self, session: Session, providers: Optional[Dict[str, PayoutProvider]] = None):
        self.session = session
        self.providers = providers or {}
        self.earnings = EarningsLedger(session)
        self.wallet = WalletLedger(session)

    # ═══════════════════════════════════════════════════════════════════════
    # WALLET TRANSFER
    # ═══════════════════════════════════════════════════════════════════════

    async def transferEarningsToWallet(self, memberId: str, amountCents: int) -> TransferResult:
        """
        Move amountCents from network earnings to the wallet. Both or neither. Commits.

        Raises:
            InsufficientFunds: Amount exceeds available earnings (nothing changes)
            ValueError: Non-positive amount
        """
        if amountCents <= 0:
            raise ValueError(f"Transfer amount must be positive, got {amountCents}")

        reference = f"transfer:{uuid.uuid4().hex}"

        try:
            earningsBalance = await self.earnings.applyDelta(
                memberId, -amountCents, "wallet_transfer",
                idempotencyKey=f"{reference}:out", externalRef=reference,
                notes="Transfer to wallet"
            )
            walletBalance = await self.wallet.applyDelta(
                memberId, amountCents, "earnings_transfer",
                idempotencyKey=f"{reference}:in", externalRef=reference,
                notes="Transfer from network earnings"
            )
            self.session.commit()

        except Exception as e:
            self.session.rollback()
            logger.warning(f"Earnings transfer for {memberId} ({amountCents} cents) failed: {e}")
            raise

        logger.info(f"Transferred {amountCents} cents earnings -> wallet for {memberId} ({reference})")
        return TransferResult(
            success=True,
            amountCents=amountCents,
            earningsBalanceCents=earningsBalance,
            walletBalanceCents=walletBalance,
            reference=reference
        )

    # ═══════════════════════════════════════════════════════════════════════
    # PREFERENCES
    # ═══════════════════════════════════════════════════════════════════════

    @staticmethod
    def platformMinimum() -> int:
        return int(Config.get(Config.PLATFORM_MIN_PAYOUT_CENTS))

    def getAutoPayoutThreshold(self, memberId: str) -> int:
        """Member threshold, never below the platform minimum."""
        preference = self.session.query(PayoutPreference).filter_by(memberID=memberId).first()
        configured = preference.autoPayoutThresholdCents if preference else None
        return max(self.platformMinimum(), int(configured or 0))

    async def setAutoPayoutThreshold(self, memberId: str, thresholdCents: int) -> int:
        """
        Store a member's auto-payout threshold, clamped to the platform minimum. Commits.

        Returns:
            Effective threshold
        """
        effective = max(self.platformMinimum(), int(thresholdCents))
        if effective != thresholdCents:
            logger.info(f"Threshold {thresholdCents} for {memberId} clamped to platform minimum {effective}")

        try:
            preference = self.session.query(PayoutPreference).filter_by(
                memberID=memberId
            ).with_for_update().first()
            if not preference:
                preference = PayoutPreference()
                preference.memberID = memberId
                self.session.add(preference)

            preference.autoPayoutThresholdCents = effective
            self.session.commit()
        except Exception as e:
            self.session.rollback()
            logger.error(f"Error saving payout threshold for {memberId}: {e}", exc_info=True)
            raise

        return effective

    def getActivePayoutAccount(self, memberId: str) -> Optional[PayoutAccount]:
        accounts = self.session.query(PayoutAccount).filter_by(
            memberID=memberId, status="active"
        ).all()
        accounts.sort(key=lambda a: PAYOUT_PROVIDERS.index(a.provider) if a.provider in PAYOUT_PROVIDERS else 99)
        return accounts[0] if accounts else None

    def _provider(self, name: str) -> PayoutProvider:
        if name in self.providers:
            return self.providers[name]
        return get_payout_provider(name)

    # ═══════════════════════════════════════════════════════════════════════
    # AUTO-PAYOUT
    # ═══════════════════════════════════════════════════════════════════════

    def requireAutoPayoutAllowed(self, memberId: str) -> PayoutAccount:
        """
        Check auto-payout preconditions.

        Returns:
            The member's active payout account

        Raises:
            PayoutNotAllowed: Manual payout mode, or no active payout account
        """
        if Config.get(Config.PAYOUT_MODE) == "manual":
            raise PayoutNotAllowed("Payouts are in manual mode", reason="manual_mode")

        account = self.getActivePayoutAccount(memberId)
        if not account:
            raise PayoutNotAllowed(f"Member {memberId} has no active payout account", reason="no_payout_account")
        return account

    async def processAutoPayout(self, memberId: str) -> AutoPayoutResult:
        """
        Pay out all available earnings when they reach the member's threshold.

        Returns:
            AutoPayoutResult(processed=False, reason=...) when the member is
            not eligible: manual_mode, no_payout_account or below_threshold

        Raises:
            ExternalProviderFailure: Provider failed; the debit was reversed
        """
        try:
            account = self.requireAutoPayoutAllowed(memberId)
        except PayoutNotAllowed as e:
            self.session.rollback()
            logger.info(f"Auto-payout for {memberId} skipped: {e}")
            return AutoPayoutResult(processed=False, reason=e.reason)

        threshold = self.getAutoPayoutThreshold(memberId)

        # ═══════════════════════════════════════════════════════════
        # STEP 1: Hold the earnings (committed before the provider call)
        # ═══════════════════════════════════════════════════════════
        try:
            earningsAccount = self.earnings.lockAccount(memberId)
            available = int(earningsAccount.availableCents or 0)

            if available < threshold:
                self.session.rollback()
                logger.debug(f"Auto-payout for {memberId}: {available} below threshold {threshold}")
                return AutoPayoutResult(processed=False, reason="below_threshold")

            payout = Payout()
            payout.memberID = memberId
            payout.provider = account.provider
            payout.accountID = account.accountID
            payout.amountCents = available
            payout.status = "pending"
            self.session.add(payout)
            self.session.flush()

            await self.earnings.applyDelta(
                memberId, -available, "payout_hold",
                idempotencyKey=f"payout_hold:{payout.payoutID}",
                externalRef=f"payout:{payout.payoutID}",
                notes=f"Auto-payout via {account.provider}"
            )
            self.session.commit()

        except Exception as e:
            self.session.rollback()
            logger.error(f"Auto-payout hold for {memberId} failed: {e}", exc_info=True)
            raise

        payoutId = payout.payoutID
        logger.info(f"Auto-payout {payoutId}: {available} cents held for {memberId} via {account.provider}")

        # ═══════════════════════════════════════════════════════════
        # STEP 2: Provider call
        # ═══════════════════════════════════════════════════════════
        try:
            provider = self._provider(account.provider)
            receipt = await provider.send_payout(account.accountID, available, f"payout-{payoutId}")
        except Exception as e:
            message = str(e)
            logger.error(f"Auto-payout {payoutId} failed at {account.provider}: {message}")
            await self.failPayout(payoutId, message)
            if isinstance(e, ExternalProviderFailure):
                e.payoutId = payoutId
                raise
            raise ExternalProviderFailure(account.provider, message, payoutId=payoutId) from e

        # ═══════════════════════════════════════════════════════════
        # STEP 3: Finalize
        # ═══════════════════════════════════════════════════════════
        await self.confirmPayout(payoutId, receipt.providerRef, receipt.estimatedArrival)

        return AutoPayoutResult(
            processed=True,
            amountCents=available,
            payoutId=payoutId,
            provider=account.provider
        )

    def _lockPendingPayout(self, payoutId: int) -> Optional[Payout]:
        payout = self.session.query(Payout).filter_by(
            payoutID=payoutId
        ).with_for_update().populate_existing().first()

        if not payout:
            logger.error(f"Payout {payoutId} not found")
            return None
        if payout.status != "pending":
            logger.warning(f"Payout {payoutId} already {payout.status}")
            return None
        return payout

    async def confirmPayout(self, payoutId: int, providerRef: str, estimatedArrival: Optional[str] = None) -> bool:
        """
        Mark a pending payout completed. Commits.

        Returns:
            False if the payout is missing or no longer pending
        """
        try:
            payout = self._lockPendingPayout(payoutId)
            if not payout:
                self.session.rollback()
                return False

            payout.status = "completed"
            payout.providerRef = providerRef
            payout.estimatedArrival = estimatedArrival
            payout.resolvedAt = timeMachine.now
            self.session.commit()

        except Exception as e:
            self.session.rollback()
            logger.critical(f"Payout {payoutId} confirmed by provider but not recorded: {e}", exc_info=True)
            raise

        logger.info(f"Payout {payoutId} completed ({providerRef})")
        await eventBus.emit(SettlementEvents.PAYOUT_COMPLETED, {
            "payoutId": payoutId,
            "memberId": payout.memberID,
            "amountCents": payout.amountCents,
            "provider": payout.provider,
        })
        return True

    async def failPayout(self, payoutId: int, reason: str) -> bool:
        """
        Mark a pending payout failed and return the held amount to earnings. Commits.

        Returns:
            False if the payout is missing or no longer pending
        """
        try:
            payout = self._lockPendingPayout(payoutId)
            if not payout:
                self.session.rollback()
                return False

            await self.earnings.applyDelta(
                payout.memberID, payout.amountCents, "payout_reversal",
                idempotencyKey=f"payout_reversal:{payoutId}",
                externalRef=f"payout:{payoutId}",
                notes=f"Reversal: {reason[:200]}"
            )

            payout.status = "failed"
            payout.failureReason = reason
            payout.resolvedAt = timeMachine.now
            self.session.commit()

        except Exception as e:
            self.session.rollback()
            logger.critical(
                f"Payout {payoutId} failed and its reversal could not be recorded, "
                f"left pending: {e}",
                exc_info=True
            )
            raise

        logger.warning(f"Payout {payoutId} failed, {payout.amountCents} cents returned to earnings: {reason}")
        await eventBus.emit(SettlementEvents.PAYOUT_FAILED, {
            "payoutId": payoutId,
            "memberId": payout.memberID,
            "amountCents": payout.amountCents,
            "provider": payout.provider,
            "reason": reason,
        })
        return True

    async def sweepAutoPayouts(self) -> List[AutoPayoutResult]:
        """
        Run auto-payout for every member with an active payout account and
        earnings at or above the platform minimum.
        """
        if Config.get(Config.PAYOUT_MODE) == "manual":
            logger.info("Payout mode is manual, auto-payout sweep skipped")
            return []

        memberIds = [row.memberID for row in (
            self.session.query(NetworkEarnings.memberID)
            .join(PayoutAccount, PayoutAccount.memberID == NetworkEarnings.memberID)
            .filter(
                PayoutAccount.status == "active",
                NetworkEarnings.availableCents >= self.platformMinimum()
            )
            .distinct()
            .all()
        )]
        self.session.rollback()

        results = []
        for memberId in memberIds:
            try:
                result = await self.processAutoPayout(memberId)
                if result.processed:
                    results.append(result)
            except ExternalProviderFailure as e:
                logger.warning(f"Auto-payout for {memberId} not completed: {e}")
            except Exception as e:
                logger.error(f"Auto-payout for {memberId} failed: {e}", exc_info=True)

        logger.info(f"Auto-payout sweep: {len(memberIds)} candidates, {len(results)} paid")
        return results
