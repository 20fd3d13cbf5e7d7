# mlm_settlement/providers/paypal_provider.py
"""
PayPal Payouts API.
"""
import logging

import aiohttp

from mlm_settlement.errors import ExternalProviderFailure
from mlm_settlement.providers.base import HttpPayoutProvider, PayoutReceipt

logger = logging.getLogger(__name__)


class PayPalPayoutProvider(HttpPayoutProvider):
    name = "paypal"

    def __init__(self, client_id: str, client_secret: str, mode: str = "sandbox", timeout: int = None):
        super().__init__(timeout)
        self.client_id = client_id
        self.client_secret = client_secret

        if mode == "live":
            self.base_url = "https://api-m.paypal.com"
        else:
            self.base_url = "https://api-m.sandbox.paypal.com"

    async def _access_token(self) -> str:
        data = await self._request(
            "POST",
            f"{self.base_url}/v1/oauth2/token",
            auth=aiohttp.BasicAuth(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"}
        )
        token = data.get("access_token")
        if not token:
            raise ExternalProviderFailure(self.name, "OAuth response without access_token")
        return token

    async def send_payout(self, account_id: str, amount_cents: int, reference: str) -> PayoutReceipt:
        logger.info(f"PayPal payout {reference}: {amount_cents} cents to {account_id}")
        token = await self._access_token()

        data = await self._request(
            "POST",
            f"{self.base_url}/v1/payments/payouts",
            headers={"Authorization": f"Bearer {token}"},
            json={
                "sender_batch_header": {
                    "sender_batch_id": reference,
                    "email_subject": "You have a payout",
                },
                "items": [{
                    "recipient_type": "EMAIL",
                    "receiver": account_id,
                    "sender_item_id": reference,
                    "amount": {
                        "value": f"{amount_cents // 100}.{amount_cents % 100:02d}",
                        "currency": "USD",
                    },
                }],
            }
        )

        batch_id = (data.get("batch_header") or {}).get("payout_batch_id")
        if not batch_id:
            raise ExternalProviderFailure(self.name, "response without payout_batch_id")

        return PayoutReceipt(providerRef=batch_id, estimatedArrival="1 business day")
