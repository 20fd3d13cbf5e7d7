# mlm_settlement/providers/stripe_provider.py
"""
Stripe Connect payouts (transfers to connected accounts).
"""
import logging

import aiohttp

from mlm_settlement.errors import ExternalProviderFailure
from mlm_settlement.providers.base import HttpPayoutProvider, PayoutReceipt

logger = logging.getLogger(__name__)


class StripePayoutProvider(HttpPayoutProvider):
    name = "stripe"
    base_url = "https://api.stripe.com/v1"

    def __init__(self, secret_key: str, timeout: int = None):
        super().__init__(timeout)
        self.secret_key = secret_key

    async def send_payout(self, account_id: str, amount_cents: int, reference: str) -> PayoutReceipt:
        logger.info(f"Stripe transfer {reference}: {amount_cents} cents to {account_id}")

        data = await self._request(
            "POST",
            f"{self.base_url}/transfers",
            auth=aiohttp.BasicAuth(self.secret_key, ""),
            headers={"Idempotency-Key": reference},
            data={
                "amount": str(amount_cents),
                "currency": "usd",
                "destination": account_id,
                "transfer_group": reference,
            }
        )

        transfer_id = data.get("id")
        if not transfer_id:
            raise ExternalProviderFailure(self.name, "response without transfer id")

        return PayoutReceipt(providerRef=transfer_id, estimatedArrival="2-3 business days")
