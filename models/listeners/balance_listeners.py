# models/listeners/balance_listeners.py
"""
Balance Event Listeners - keep cached balances equal to their journals.

Architecture:
    WalletTxn   (INSERT/UPDATE/DELETE) → WalletAccount.balanceCents = SUM(deltaCents)
    EarningsTxn (INSERT/UPDATE/DELETE) → NetworkEarnings.availableCents = SUM(deltaCents)
                                         NetworkEarnings.lifetimeCents = SUM(earned credits)

Every recalculation runs on the flushing connection, inside the same
transaction as the journal row, so a rollback undoes both.

NOTE: All balance operations MUST go through the journal tables
      (see mlm_settlement/services/ledger_service.py).
"""
import logging

from sqlalchemy import event, func, select, and_

logger = logging.getLogger(__name__)


def register_balance_listeners():
    """
    Register event listeners for balance synchronization.

    Called once during application startup from models/listeners/__init__.py
    """
    from models.wallet import WalletAccount, WalletTxn
    from models.network_earnings import NetworkEarnings, EarningsTxn, EARNING_REASONS

    # =========================================================================
    # WALLET LISTENERS
    # =========================================================================

    def recalc_wallet_balance(mapper, connection, target):
        """
        Full recalculation of WalletAccount.balanceCents from journal.

        Formula: balanceCents = SUM(WalletTxn.deltaCents) WHERE memberID=X
        """
        txns = WalletTxn.__table__
        real_balance = connection.execute(
            select(func.coalesce(func.sum(txns.c.deltaCents), 0))
            .where(txns.c.memberID == target.memberID)
        ).scalar()

        # Overwrite (NOT increment!)
        connection.execute(
            WalletAccount.__table__.update()
            .where(WalletAccount.__table__.c.memberID == target.memberID)
            .values(balanceCents=real_balance)
        )

        logger.debug(
            f"Wallet RECALC: member={target.memberID}, "
            f"new_balance={real_balance}, trigger={target.reason}"
        )

    event.listen(WalletTxn, 'after_insert', recalc_wallet_balance)
    event.listen(WalletTxn, 'after_update', recalc_wallet_balance)
    event.listen(WalletTxn, 'after_delete', recalc_wallet_balance)

    # =========================================================================
    # NETWORK EARNINGS LISTENERS
    # =========================================================================

    def recalc_network_earnings(mapper, connection, target):
        """
        Full recalculation of NetworkEarnings from journal.

        Formula: availableCents = SUM(deltaCents) WHERE memberID=X
                 lifetimeCents  = SUM(deltaCents) WHERE memberID=X
                                  AND deltaCents > 0 AND reason IN EARNING_REASONS
        """
        txns = EarningsTxn.__table__
        available = connection.execute(
            select(func.coalesce(func.sum(txns.c.deltaCents), 0))
            .where(txns.c.memberID == target.memberID)
        ).scalar()

        lifetime = connection.execute(
            select(func.coalesce(func.sum(txns.c.deltaCents), 0))
            .where(and_(
                txns.c.memberID == target.memberID,
                txns.c.deltaCents > 0,
                txns.c.reason.in_(EARNING_REASONS)
            ))
        ).scalar()

        connection.execute(
            NetworkEarnings.__table__.update()
            .where(NetworkEarnings.__table__.c.memberID == target.memberID)
            .values(availableCents=available, lifetimeCents=lifetime)
        )

        logger.debug(
            f"NetworkEarnings RECALC: member={target.memberID}, "
            f"available={available}, lifetime={lifetime}, trigger={target.reason}"
        )

    event.listen(EarningsTxn, 'after_insert', recalc_network_earnings)
    event.listen(EarningsTxn, 'after_update', recalc_network_earnings)
    event.listen(EarningsTxn, 'after_delete', recalc_network_earnings)


# =========================================================================
# SAFETY: Warn on direct balance modification
# =========================================================================

def register_balance_protection():
    """
    Log warnings when a cached balance attribute is assigned directly.
    Bulk repairs (ReconciliationService.repairBalances) bypass this hook.
    """
    from models.wallet import WalletAccount
    from models.network_earnings import NetworkEarnings

    @event.listens_for(WalletAccount.balanceCents, 'set')
    def warn_direct_wallet_set(target, value, oldvalue, initiator):
        if isinstance(oldvalue, int) and value != oldvalue:
            logger.warning(
                f"DIRECT balanceCents modification detected! "
                f"member={target.memberID}, {oldvalue} → {value}"
            )

    @event.listens_for(NetworkEarnings.availableCents, 'set')
    def warn_direct_earnings_set(target, value, oldvalue, initiator):
        if isinstance(oldvalue, int) and value != oldvalue:
            logger.warning(
                f"DIRECT availableCents modification detected! "
                f"member={target.memberID}, {oldvalue} → {value}"
            )
