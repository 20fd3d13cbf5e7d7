# mlm_settlement/services/ledger_service.py
"""
Ledger primitives - wallet and network earnings balances.

Every mutation is a journal row (WalletTxn / EarningsTxn); the cached
balance on the account row is rebuilt from the journal by the balance
listeners. The account row is locked (SELECT ... FOR UPDATE) before the
balance check, so concurrent deltas for the same member serialize.

applyDelta never commits: it runs inside the caller's unit of work.
"""
import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.wallet import WalletAccount, WalletTxn
from models.network_earnings import NetworkEarnings, EarningsTxn
from mlm_settlement.errors import InsufficientFunds

logger = logging.getLogger(__name__)


class BaseLedger:
    """Shared journal-append logic; subclasses bind the account/journal models."""

    ledgerName = ""
    accountModel = None
    txnModel = None
    balanceField = ""

    def __init__(self, session: Session):
        self.session = session

    # ═══════════════════════════════════════════════════════════════════════
    # ACCOUNT ACCESS
    # ═══════════════════════════════════════════════════════════════════════

    def _lockedQuery(self, memberId: str):
        return (
            self.session.query(self.accountModel)
            .filter_by(memberID=memberId)
            .with_for_update()
            .populate_existing()
        )

    def lockAccount(self, memberId: str):
        """
        Get the member's account row under a row lock, creating it if missing.

        A concurrent creation of the same account surfaces as an
        IntegrityError inside the savepoint; the winner's row is re-read.
        """
        account = self._lockedQuery(memberId).first()
        if account:
            return account

        account = self.accountModel()
        account.memberID = memberId
        try:
            with self.session.begin_nested():
                self.session.add(account)
                self.session.flush()
        except IntegrityError:
            logger.debug(f"{self.ledgerName} account for {memberId} created concurrently")
            account = self._lockedQuery(memberId).one()

        return account

    def getBalance(self, memberId: str) -> int:
        account = self.session.query(self.accountModel).filter_by(memberID=memberId).first()
        if not account:
            return 0
        self.session.refresh(account)
        return int(getattr(account, self.balanceField) or 0)

    def findEntry(self, idempotencyKey: str):
        return self.session.query(self.txnModel).filter_by(
            idempotencyKey=idempotencyKey
        ).first()

    # ═══════════════════════════════════════════════════════════════════════
    # MUTATION
    # ═══════════════════════════════════════════════════════════════════════

    def _buildTxn(self, memberId: str, deltaCents: int, reason: str,
                  idempotencyKey: Optional[str], externalRef: Optional[str],
                  gateway: Optional[str], notes: Optional[str]):
        txn = self.txnModel()
        txn.memberID = memberId
        txn.deltaCents = deltaCents
        txn.reason = reason
        txn.idempotencyKey = idempotencyKey
        txn.externalRef = externalRef
        txn.notes = notes
        return txn

    async def applyDelta(
            self,
            memberId: str,
            deltaCents: int,
            reason: str,
            idempotencyKey: Optional[str] = None,
            externalRef: Optional[str] = None,
            gateway: Optional[str] = None,
            notes: Optional[str] = None
    ) -> int:
        """
        Append one delta to the member's journal.

        Args:
            memberId: Account owner
            deltaCents: Positive credit or negative debit, integer cents
            reason: Reason code stored on the journal row
            idempotencyKey: When given, a replay with the same key is a no-op
            externalRef: Optional external reference (payment, payout)

        Returns:
            Balance after the delta (or the current balance on a replay)

        Raises:
            InsufficientFunds: Debit would make the balance negative
        """
        deltaCents = int(deltaCents)
        account = self.lockAccount(memberId)
        current = int(getattr(account, self.balanceField) or 0)

        if idempotencyKey and self.findEntry(idempotencyKey):
            logger.info(f"{self.ledgerName} delta {idempotencyKey} already applied, skipping")
            return current

        if deltaCents < 0 and current + deltaCents < 0:
            raise InsufficientFunds(memberId, -deltaCents, current, ledger=self.ledgerName)

        txn = self._buildTxn(memberId, deltaCents, reason, idempotencyKey, externalRef, gateway, notes)

        try:
            with self.session.begin_nested():
                self.session.add(txn)
                self.session.flush()
        except IntegrityError:
            logger.info(f"{self.ledgerName} delta {idempotencyKey} applied concurrently, skipping")
            self.session.refresh(account)
            return int(getattr(account, self.balanceField) or 0)

        # Listener rewrote the cached balance on the flushing connection
        self.session.refresh(account)
        newBalance = int(getattr(account, self.balanceField) or 0)

        logger.info(
            f"{self.ledgerName}: member={memberId}, delta={deltaCents}, "
            f"reason={reason}, balance={newBalance}"
        )
        return newBalance

    async def credit(self, memberId: str, amountCents: int, reason: str, **kwargs) -> int:
        if amountCents <= 0:
            raise ValueError(f"Credit amount must be positive, got {amountCents}")
        return await self.applyDelta(memberId, amountCents, reason, **kwargs)

    async def debit(self, memberId: str, amountCents: int, reason: str, **kwargs) -> int:
        if amountCents <= 0:
            raise ValueError(f"Debit amount must be positive, got {amountCents}")
        return await self.applyDelta(memberId, -amountCents, reason, **kwargs)


class WalletLedger(BaseLedger):
    """Spendable wallet balance."""

    ledgerName = "wallet"
    accountModel = WalletAccount
    txnModel = WalletTxn
    balanceField = "balanceCents"

    def _buildTxn(self, memberId, deltaCents, reason, idempotencyKey, externalRef, gateway, notes):
        txn = super()._buildTxn(memberId, deltaCents, reason, idempotencyKey, externalRef, gateway, notes)
        txn.gateway = gateway
        return txn


class EarningsLedger(BaseLedger):
    """Network earnings pending transfer or payout."""

    ledgerName = "network_earnings"
    accountModel = NetworkEarnings
    txnModel = EarningsTxn
    balanceField = "availableCents"

    def getLifetime(self, memberId: str) -> int:
        account = self.session.query(NetworkEarnings).filter_by(memberID=memberId).first()
        if not account:
            return 0
        self.session.refresh(account)
        return int(account.lifetimeCents or 0)
