# mlm_settlement/events/handlers.py
"""
Event handlers for settlement events.
Notify members about phase changes, commissions and payouts.

All handlers are fire-and-forget: they run after the settlement commit,
in their own session, and never raise.
"""
import logging
from typing import Any, Dict

from core.db import get_session
from models.member import Member
from notifications import notificationService, format_cents

logger = logging.getLogger(__name__)


async def _notify_member(memberId: str, template: str, variables: Dict[str, Any]) -> bool:
    session = get_session()
    try:
        member = session.query(Member).filter_by(memberID=memberId).first()
        if not member:
            logger.warning(f"Notification '{template}': member {memberId} not found")
            return False
        email = member.email
        name = member.name or memberId
    except Exception as e:
        logger.error(f"Notification '{template}' lookup for {memberId} failed: {e}", exc_info=True)
        return False
    finally:
        session.close()

    return await notificationService.send(email, template, {"name": name, **variables}, memberId=memberId)


async def handle_phase_changed(data: Dict[str, Any]):
    """Handle PHASE_CHANGED event."""
    memberId = data.get("memberId")
    if not memberId:
        logger.error("PHASE_CHANGED event missing memberId")
        return

    await _notify_member(memberId, "phase_changed", {
        "previousPhase": data.get("previousPhase"),
        "newPhase": data.get("newPhase"),
    })


async def handle_payment_settled(data: Dict[str, Any]):
    """Handle PAYMENT_SETTLED event: one notification per commission recipient."""
    for commission in data.get("commissions", []):
        await _notify_member(commission["recipientId"], "commission_earned", {
            "amount": format_cents(int(commission["amountCents"])),
        })


async def handle_payout_completed(data: Dict[str, Any]):
    """Handle PAYOUT_COMPLETED event."""
    await _notify_member(data["memberId"], "payout_completed", {
        "amount": format_cents(int(data["amountCents"])),
        "provider": data.get("provider"),
    })


async def handle_payout_failed(data: Dict[str, Any]):
    """Handle PAYOUT_FAILED event."""
    logger.warning(
        f"Payout {data.get('payoutId')} failed for {data.get('memberId')}: {data.get('reason')}"
    )
    await _notify_member(data["memberId"], "payout_failed", {
        "amount": format_cents(int(data["amountCents"])),
        "provider": data.get("provider"),
    })
