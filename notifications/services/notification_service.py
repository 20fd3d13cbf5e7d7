# notifications/services/notification_service.py
"""
Best-effort member notifications for settlement events.

Nothing here may fail a settlement: every error is logged and swallowed,
and send() reports success as a bool.
"""
import logging
from typing import Any, Dict, Optional

from config import Config
from notifications.providers import MailgunProvider

logger = logging.getLogger(__name__)

TEMPLATES: Dict[str, Dict[str, str]] = {
    "phase_changed": {
        "subject": "Your phase is now {newPhase}",
        "body": "Hi {name},\n\nYour network phase changed from {previousPhase} to {newPhase}.",
    },
    "commission_earned": {
        "subject": "You earned a commission",
        "body": "Hi {name},\n\n{amount} was added to your network earnings.",
    },
    "payout_completed": {
        "subject": "Payout sent",
        "body": "Hi {name},\n\nYour payout of {amount} via {provider} is on its way.",
    },
    "payout_failed": {
        "subject": "Payout failed",
        "body": (
            "Hi {name},\n\nYour payout of {amount} via {provider} failed. "
            "The amount is back in your network earnings."
        ),
    },
}


def format_cents(amountCents: int) -> str:
    return f"${amountCents // 100}.{amountCents % 100:02d}"


class NotificationService:
    """
    Sends templated notifications to members.

    Usage:
        service = NotificationService()
        service.initialize()
        await service.send("a@b.c", "phase_changed", {"name": "Ann", ...})
    """

    def __init__(self, provider=None):
        self.provider = provider
        self._initialized = provider is not None

    def initialize(self) -> None:
        """Build the Mailgun provider from Config when notifications are enabled."""
        if self._initialized:
            return

        if not Config.get(Config.NOTIFICATIONS_ENABLED):
            logger.info("Notifications disabled")
        else:
            self.provider = MailgunProvider.from_config()
            if self.provider:
                logger.info("NotificationService initialized with Mailgun")
            else:
                logger.warning("Notifications enabled but Mailgun is not configured")

        self._initialized = True

    async def send(self, to: Optional[str], template: str, variables: Dict[str, Any],
                   memberId: Optional[str] = None) -> bool:
        """Render and send one notification, tagged with the template name. Never raises."""
        if not self.provider:
            logger.debug(f"No notification provider, '{template}' not sent")
            return False
        if not to:
            logger.debug(f"No address for '{template}' notification")
            return False

        try:
            entry = TEMPLATES[template]
            subject = entry["subject"].format(**variables)
            body = entry["body"].format(**variables)
            return bool(await self.provider.send_email(
                to=to,
                subject=subject,
                text_body=body,
                tags=[template],
                variables={"memberId": memberId, "template": template}
            ))
        except Exception as e:
            logger.error(f"Notification '{template}' to {to} failed: {e}", exc_info=True)
            return False


notificationService = NotificationService()
