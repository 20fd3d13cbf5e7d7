# mlm_settlement/events/setup.py
"""
Setup settlement event handlers.
Register all event handlers with the event bus.
"""
import logging

from mlm_settlement.events.event_bus import eventBus, SettlementEvents
from mlm_settlement.events.handlers import (
    handle_payment_settled,
    handle_payout_completed,
    handle_payout_failed,
    handle_phase_changed,
)

logger = logging.getLogger(__name__)

_HANDLERS = [
    (SettlementEvents.PAYMENT_SETTLED, handle_payment_settled),
    (SettlementEvents.PHASE_CHANGED, handle_phase_changed),
    (SettlementEvents.PAYOUT_COMPLETED, handle_payout_completed),
    (SettlementEvents.PAYOUT_FAILED, handle_payout_failed),
]


def setup_settlement_event_handlers():
    """
    Register all settlement event handlers with the event bus.

    Called once during worker initialization.
    """
    logger.info("Setting up settlement event handlers...")

    for eventName, handler in _HANDLERS:
        eventBus.subscribe(eventName, handler)
        logger.debug(f"Registered handler for {eventName}")

    logger.info("Settlement event handlers registered successfully")


def teardown_settlement_event_handlers():
    """
    Unregister all settlement event handlers.
    Useful for testing or shutdown.
    """
    logger.info("Tearing down settlement event handlers...")

    for eventName, handler in _HANDLERS:
        eventBus.unsubscribe(eventName, handler)

    logger.info("Settlement event handlers unregistered")
