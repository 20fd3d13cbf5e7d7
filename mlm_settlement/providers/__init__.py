"""
Payout providers and their registry.
"""
import logging
from typing import Dict

from config import Config
from mlm_settlement.errors import ExternalProviderFailure
from mlm_settlement.providers.base import PayoutProvider, PayoutReceipt
from mlm_settlement.providers.generic_provider import BearerPayoutProvider
from mlm_settlement.providers.paypal_provider import PayPalPayoutProvider
from mlm_settlement.providers.stripe_provider import StripePayoutProvider

logger = logging.getLogger(__name__)

_overrides: Dict[str, PayoutProvider] = {}


def register_payout_provider(name: str, provider: PayoutProvider) -> None:
    """Install a provider instance for name (replaces the configured one)."""
    _overrides[name] = provider


def clear_payout_providers() -> None:
    _overrides.clear()


def get_payout_provider(name: str) -> PayoutProvider:
    """
    Provider for name, built from Config credentials.

    Raises:
        ExternalProviderFailure: Unknown or unconfigured provider
    """
    if name in _overrides:
        return _overrides[name]

    if name == "stripe" and Config.get(Config.STRIPE_SECRET_KEY):
        return StripePayoutProvider(Config.get(Config.STRIPE_SECRET_KEY))

    if name == "paypal" and Config.get(Config.PAYPAL_CLIENT_ID):
        return PayPalPayoutProvider(
            Config.get(Config.PAYPAL_CLIENT_ID),
            Config.get(Config.PAYPAL_CLIENT_SECRET),
            Config.get(Config.PAYPAL_MODE)
        )

    if name == "authorize_net" and Config.get(Config.AUTHORIZE_NET_API_URL):
        return BearerPayoutProvider(
            "authorize_net",
            Config.get(Config.AUTHORIZE_NET_API_URL),
            Config.get(Config.AUTHORIZE_NET_API_KEY)
        )

    if name == "payoneer" and Config.get(Config.PAYONEER_API_URL):
        return BearerPayoutProvider(
            "payoneer",
            Config.get(Config.PAYONEER_API_URL),
            Config.get(Config.PAYONEER_API_KEY)
        )

    logger.error(f"Payout provider '{name}' is not configured")
    raise ExternalProviderFailure(name, "provider not configured")


__all__ = [
    'PayoutProvider',
    'PayoutReceipt',
    'get_payout_provider',
    'register_payout_provider',
    'clear_payout_providers',
]
