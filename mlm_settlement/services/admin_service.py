# mlm_settlement/services/admin_service.py
"""
Admin overrides - forced phases and balance adjustments.

Every override writes an AdminAuditLog row with before/after values.
Balance adjustments are journal entries (reason 'admin_adjustment'), so
cached balances stay equal to SUM(journal).
"""
from typing import Any, Dict, Optional
import logging

from sqlalchemy.orm import Session

from models.audit_log import AdminAuditLog
from models.member import Member
from mlm_settlement.config.phases import PhaseConfig, MAX_PHASE, load_phase_config
from mlm_settlement.services.ledger_service import EarningsLedger, WalletLedger, BaseLedger
from mlm_settlement.services.phase_service import PhaseService

logger = logging.getLogger(__name__)


class AdminService:
    """Audited support operations outside the normal settlement flow."""

    def __init__(self, session: Session, adminId: Optional[str] = None):
        self.session = session
        self.adminId = adminId
        self.phases = PhaseService(session)

    def _audit(self, action: str, memberId: str, before: Dict[str, Any], after: Dict[str, Any],
               note: Optional[str]) -> None:
        entry = AdminAuditLog()
        entry.adminID = self.adminId
        entry.action = action
        entry.memberID = memberId
        entry.before = before
        entry.after = after
        entry.note = note
        self.session.add(entry)

        logger.warning(
            f"ADMIN {action}: member={memberId}, admin={self.adminId}, "
            f"before={before}, after={after}"
        )

    def _requireMember(self, memberId: str) -> Member:
        member = self.session.query(Member).filter_by(memberID=memberId).first()
        if not member:
            raise ValueError(f"Member {memberId} not found")
        return member

    # ═══════════════════════════════════════════════════════════════════════
    # PHASES
    # ═══════════════════════════════════════════════════════════════════════

    async def setPhase(self, memberId: str, phase: int, phaseConfig: Optional[PhaseConfig] = None,
                       note: Optional[str] = None) -> int:
        """
        Force a member's phase and freeze automatic progression. Commits.
        No phase reward is granted by an override.
        """
        if phase < 0 or phase > MAX_PHASE:
            raise ValueError(f"Phase must be between 0 and {MAX_PHASE}, got {phase}")

        try:
            self._requireMember(memberId)
            phaseConfig = phaseConfig or load_phase_config(self.session)

            record = self.phases.lockRecord(memberId)
            before = {"phase": record.phase, "manualPhaseOverride": record.manualPhaseOverride}

            if record.phase != phase:
                self.phases.applyTransition(record, phase, "admin", phaseConfig)
            record.manualPhaseOverride = True

            self._audit("set_phase", memberId, before,
                        {"phase": phase, "manualPhaseOverride": True}, note)
            self.session.commit()

        except Exception:
            self.session.rollback()
            raise

        return phase

    async def clearPhaseOverride(self, memberId: str, note: Optional[str] = None) -> None:
        """Re-enable automatic progression. Takes effect at the next evaluation. Commits."""
        try:
            self._requireMember(memberId)
            record = self.phases.lockRecord(memberId)
            before = {"manualPhaseOverride": record.manualPhaseOverride}
            record.manualPhaseOverride = False

            self._audit("clear_phase_override", memberId, before, {"manualPhaseOverride": False}, note)
            self.session.commit()

        except Exception:
            self.session.rollback()
            raise

    # ═══════════════════════════════════════════════════════════════════════
    # BALANCES
    # ═══════════════════════════════════════════════════════════════════════

    async def _adjust(self, ledger: BaseLedger, action: str, memberId: str, targetCents: int,
                      note: Optional[str]) -> int:
        if targetCents < 0:
            raise ValueError(f"Target balance must not be negative, got {targetCents}")

        try:
            self._requireMember(memberId)
            account = ledger.lockAccount(memberId)
            current = int(getattr(account, ledger.balanceField) or 0)
            delta = int(targetCents) - current

            newBalance = current
            if delta != 0:
                newBalance = await ledger.applyDelta(
                    memberId, delta, "admin_adjustment",
                    notes=note or f"Admin {action} by {self.adminId}"
                )

            self._audit(action, memberId, {ledger.balanceField: current},
                        {ledger.balanceField: newBalance}, note)
            self.session.commit()

        except Exception:
            self.session.rollback()
            raise

        return newBalance

    async def adjustWallet(self, memberId: str, targetBalanceCents: int, note: Optional[str] = None) -> int:
        """Set the wallet balance to targetBalanceCents. Commits. Returns the new balance."""
        return await self._adjust(WalletLedger(self.session), "adjust_wallet", memberId, targetBalanceCents, note)

    async def adjustNetworkEarnings(self, memberId: str, targetAmountCents: int, note: Optional[str] = None) -> int:
        """Set available network earnings to targetAmountCents. Commits. Returns the new balance."""
        return await self._adjust(
            EarningsLedger(self.session), "adjust_network_earnings", memberId, targetAmountCents, note
        )
