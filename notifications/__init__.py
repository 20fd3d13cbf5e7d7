"""
Notification sender for settlement events.
"""
from notifications.services.notification_service import (
    NotificationService,
    notificationService,
    format_cents,
)

__all__ = ['NotificationService', 'notificationService', 'format_cents']
