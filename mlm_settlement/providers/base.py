# mlm_settlement/providers/base.py
"""
Payout provider interface.

A provider either returns a PayoutReceipt or raises
ExternalProviderFailure; timeouts and transport errors are converted to
ExternalProviderFailure so the payout service has one failure path.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from mlm_settlement.errors import ExternalProviderFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PayoutReceipt:
    providerRef: str
    estimatedArrival: Optional[str] = None


class PayoutProvider:
    """Base class for external payout providers."""

    name = "base"

    async def send_payout(self, account_id: str, amount_cents: int, reference: str) -> PayoutReceipt:
        """
        Transfer amount_cents to the member's provider account.

        Args:
            account_id: Provider-side account identifier
            amount_cents: Amount in cents
            reference: Idempotency reference (payout ID based)

        Raises:
            ExternalProviderFailure: Rejected, unreachable or timed out
        """
        raise NotImplementedError


class HttpPayoutProvider(PayoutProvider):
    """Provider over a JSON/form HTTP API with a bounded timeout."""

    def __init__(self, timeout: Optional[int] = None):
        self.timeout = int(timeout or Config.get(Config.PAYOUT_PROVIDER_TIMEOUT))

    async def _request(
            self,
            method: str,
            url: str,
            ok_statuses=(200, 201, 202),
            **kwargs
    ) -> Dict[str, Any]:
        try:
            async with aiohttp.ClientSession() as session:
                async with session.request(
                        method,
                        url,
                        timeout=aiohttp.ClientTimeout(total=self.timeout),
                        **kwargs
                ) as response:
                    if response.status not in ok_statuses:
                        error_text = await response.text()
                        logger.error(f"{self.name} API error: {response.status} - {error_text}")
                        raise ExternalProviderFailure(self.name, f"HTTP {response.status}: {error_text[:200]}")
                    return await response.json(content_type=None)

        except asyncio.TimeoutError:
            logger.error(f"{self.name} API timed out after {self.timeout}s")
            raise ExternalProviderFailure(self.name, f"timed out after {self.timeout}s")
        except aiohttp.ClientError as e:
            logger.error(f"HTTP error while calling {self.name}: {e}")
            raise ExternalProviderFailure(self.name, str(e))
