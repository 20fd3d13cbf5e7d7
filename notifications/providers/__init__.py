"""
Notification providers.
"""
from notifications.providers.mailgun_provider import MailgunProvider

__all__ = ['MailgunProvider']
