# notifications/providers/mailgun_provider.py
"""
Mailgun transport for settlement notifications.

Messages are tagged with their template name and carry the member ID as
a Mailgun custom variable, so delivery and bounce events can be traced
back to the member and the settlement event that caused them.
"""
import asyncio
import logging
from typing import Dict, Iterable, Optional

import aiohttp

from config import Config

logger = logging.getLogger(__name__)

# Mailgun accepts at most 3 tags per message
MAX_TAGS = 3
RETRYABLE_STATUSES = (429, 500, 502, 503, 504)


class MailgunProvider:
    """Sends plain-text notifications through the Mailgun messages API."""

    def __init__(self, api_key: str, domain: str, region: str = 'eu', sender: str = "Network Earnings",
                 timeout: int = 10, max_attempts: int = 2, retry_delay: float = 1.0):
        self.api_key = api_key
        self.domain = domain
        self.sender = f"{sender} <noreply@{domain}>"
        self.timeout = timeout
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay = retry_delay

        host = "api.eu.mailgun.net" if region == 'eu' else "api.mailgun.net"
        self.messages_url = f"https://{host}/v3/{domain}/messages"

        logger.info(f"MailgunProvider initialized: domain={domain}, region={region}")

    @classmethod
    def from_config(cls) -> Optional["MailgunProvider"]:
        """Build from Config; None when the key or domain is missing."""
        api_key = Config.get(Config.MAILGUN_API_KEY)
        domain = Config.get(Config.MAILGUN_DOMAIN)
        if not api_key or not domain:
            return None

        return cls(
            api_key=api_key,
            domain=domain,
            region=Config.get(Config.MAILGUN_REGION),
            sender=Config.get(Config.NOTIFICATIONS_SENDER)
        )

    def build_message(
            self,
            to: str,
            subject: str,
            text_body: str,
            html_body: Optional[str] = None,
            tags: Iterable[str] = (),
            variables: Optional[Dict[str, str]] = None
    ) -> Dict[str, object]:
        """Form fields for one message. Repeated fields are lists."""
        data: Dict[str, object] = {
            "from": self.sender,
            "to": to,
            "subject": subject,
            "text": text_body,
        }
        if html_body:
            data["html"] = html_body

        tags = [t for t in tags if t][:MAX_TAGS]
        if tags:
            data["o:tag"] = tags

        for key, value in (variables or {}).items():
            if value is not None:
                data[f"v:{key}"] = str(value)

        return data

    @staticmethod
    def _form(data: Dict[str, object]) -> aiohttp.FormData:
        form = aiohttp.FormData()
        for key, value in data.items():
            for item in (value if isinstance(value, list) else [value]):
                form.add_field(key, item)
        return form

    async def _post(self, data: Dict[str, object]) -> int:
        """POST one message; returns the HTTP status."""
        async with aiohttp.ClientSession() as session:
            async with session.post(
                    self.messages_url,
                    auth=aiohttp.BasicAuth("api", self.api_key),
                    data=self._form(data),
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"Mailgun API error: {response.status} - {error_text[:200]}")
                return response.status

    async def send_email(self, to: str, subject: str, text_body: str, html_body: str = None,
                         tags: Iterable[str] = (), variables: Optional[Dict[str, str]] = None) -> bool:
        """
        Send one message. Rate limits and server errors are retried up to
        max_attempts; transport errors are logged, not raised.

        Returns:
            True if Mailgun accepted the message
        """
        data = self.build_message(to, subject, text_body, html_body, tags, variables)

        for attempt in range(1, self.max_attempts + 1):
            try:
                status = await self._post(data)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"Mailgun request to {to} failed (attempt {attempt}/{self.max_attempts}): {e}")
                status = None

            if status == 200:
                logger.info(f"Notification sent via Mailgun to {to}")
                return True
            if status is not None and status not in RETRYABLE_STATUSES:
                return False
            if attempt < self.max_attempts:
                await asyncio.sleep(self.retry_delay * attempt)

        logger.error(f"Mailgun gave up on {to} after {self.max_attempts} attempts")
        return False
