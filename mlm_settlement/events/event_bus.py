# mlm_settlement/events/event_bus.py
"""
In-process event bus for settlement events.

Events are emitted after the settlement transaction commits. Handlers are
best-effort: an exception in one handler is logged and never reaches the
emitter or the other handlers.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[None]]


class SettlementEvents:
    """Event names."""
    PAYMENT_SETTLED = "payment_settled"
    PHASE_CHANGED = "phase_changed"
    PAYOUT_COMPLETED = "payout_completed"
    PAYOUT_FAILED = "payout_failed"


class EventBus:
    """Minimal async publish/subscribe."""

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {}

    def subscribe(self, eventName: str, handler: Handler) -> None:
        handlers = self._handlers.setdefault(eventName, [])
        if handler not in handlers:
            handlers.append(handler)

    def unsubscribe(self, eventName: str, handler: Handler) -> None:
        handlers = self._handlers.get(eventName, [])
        if handler in handlers:
            handlers.remove(handler)

    def clear(self) -> None:
        self._handlers = {}

    def handlers(self, eventName: str) -> List[Handler]:
        return list(self._handlers.get(eventName, []))

    async def emit(self, eventName: str, data: Dict[str, Any]) -> None:
        """Call every handler of eventName in turn."""
        for handler in self.handlers(eventName):
            try:
                result = handler(data)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(
                    f"Event handler {getattr(handler, '__name__', handler)} "
                    f"failed for {eventName}: {e}",
                    exc_info=True
                )


eventBus = EventBus()
