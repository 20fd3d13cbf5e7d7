# mlm_settlement/providers/generic_provider.py
"""
Bearer-token JSON payout APIs (Authorize.net and Payoneer gateways).
"""
import logging

from mlm_settlement.errors import ExternalProviderFailure
from mlm_settlement.providers.base import HttpPayoutProvider, PayoutReceipt

logger = logging.getLogger(__name__)


class BearerPayoutProvider(HttpPayoutProvider):
    """POST {api_url}/payouts with a bearer key; expects an `id` back."""

    def __init__(self, name: str, api_url: str, api_key: str, timeout: int = None):
        super().__init__(timeout)
        self.name = name
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key

    async def send_payout(self, account_id: str, amount_cents: int, reference: str) -> PayoutReceipt:
        logger.info(f"{self.name} payout {reference}: {amount_cents} cents to {account_id}")

        data = await self._request(
            "POST",
            f"{self.api_url}/payouts",
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "payee_id": account_id,
                "amount_cents": amount_cents,
                "currency": "USD",
                "client_reference_id": reference,
            }
        )

        payout_id = data.get("id") or data.get("payout_id")
        if not payout_id:
            raise ExternalProviderFailure(self.name, "response without payout id")

        return PayoutReceipt(providerRef=str(payout_id), estimatedArrival=data.get("estimated_arrival"))
