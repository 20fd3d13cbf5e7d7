# mlm_settlement/payments/intents.py
"""
Payment intents - the gateway payload resolved once into a typed command.

Gateway metadata arrives as a loose JSON map. parse_payment_intent turns it
into exactly one of CheckoutCommand, SubscriptionCommand or
WalletRechargeCommand, keyed by the `intent` discriminator, so nothing
below the settlement boundary handles raw dictionaries.
"""
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, Optional, Union
import logging

from mlm_settlement.errors import InvalidPaymentPayload
from mlm_settlement.utils.time_machine import to_naive_utc

logger = logging.getLogger(__name__)

GATEWAYS = ("stripe", "paypal", "wallet", "authorize_net", "payoneer")

INTENT_CHECKOUT = "checkout"
INTENT_SUBSCRIPTION = "subscription"
INTENT_WALLET_RECHARGE = "wallet_recharge"


@dataclass(frozen=True)
class _PaymentCommand:
    memberId: str
    amountCents: int
    gateway: str
    gatewayRef: str

    @property
    def originRef(self) -> str:
        return f"{self.gateway}:{self.gatewayRef}"

    def toPayload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["intent"] = self.intent
        for key, value in payload.items():
            if isinstance(value, datetime):
                payload[key] = value.isoformat()
        return payload


@dataclass(frozen=True)
class CheckoutCommand(_PaymentCommand):
    """Product purchase, optionally through an affiliate storefront."""
    sellerId: Optional[str] = None
    orderRef: Optional[str] = None

    intent = INTENT_CHECKOUT


@dataclass(frozen=True)
class SubscriptionCommand(_PaymentCommand):
    """Subscription payment or renewal."""
    subscriptionType: str = "mlm"
    periodEnd: Optional[datetime] = None
    planId: Optional[str] = None

    intent = INTENT_SUBSCRIPTION


@dataclass(frozen=True)
class WalletRechargeCommand(_PaymentCommand):
    """Top-up of the member's own wallet. Pays no commissions."""

    intent = INTENT_WALLET_RECHARGE


PaymentCommand = Union[CheckoutCommand, SubscriptionCommand, WalletRechargeCommand]


def _require(payload: Dict[str, Any], *keys: str):
    for key in keys:
        value = payload.get(key)
        if value is not None and value != "":
            return value
    raise InvalidPaymentPayload(f"Missing required field: {keys[0]}")


def _parse_amount(value: Any) -> int:
    if isinstance(value, bool):
        raise InvalidPaymentPayload(f"Invalid amountCents: {value!r}")
    try:
        amount = int(value)
    except (TypeError, ValueError):
        raise InvalidPaymentPayload(f"Invalid amountCents: {value!r}")
    if amount != value and str(amount) != str(value).strip():
        raise InvalidPaymentPayload(f"amountCents must be an integer, got {value!r}")
    if amount <= 0:
        raise InvalidPaymentPayload(f"amountCents must be positive, got {amount}")
    return amount


def _parse_period_end(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    try:
        text = str(value).replace("Z", "+00:00")
        return to_naive_utc(datetime.fromisoformat(text))
    except ValueError:
        raise InvalidPaymentPayload(f"Invalid periodEnd: {value!r}")


def parse_payment_intent(payload: Dict[str, Any]) -> PaymentCommand:
    """
    Resolve a gateway confirmation payload into a typed command.

    Accepted keys: intent, memberId (or buyerId), amountCents, gateway,
    gatewayRef, periodEnd, subscriptionType, planId, sellerId, orderRef.
    A payload without `intent` is a subscription payment.

    Raises:
        InvalidPaymentPayload: Unknown intent or gateway, bad amount,
            missing identifiers
    """
    if not isinstance(payload, dict):
        raise InvalidPaymentPayload(f"Payload must be a mapping, got {type(payload).__name__}")

    intent = payload.get("intent") or INTENT_SUBSCRIPTION
    memberId = str(_require(payload, "memberId", "buyerId"))
    gateway = str(_require(payload, "gateway")).lower()
    gatewayRef = str(_require(payload, "gatewayRef"))
    amountCents = _parse_amount(_require(payload, "amountCents"))

    if gateway not in GATEWAYS:
        raise InvalidPaymentPayload(f"Unknown gateway: {gateway}")

    if intent == INTENT_SUBSCRIPTION:
        subscriptionType = payload.get("subscriptionType") or "mlm"
        if subscriptionType not in ("mlm", "affiliate"):
            raise InvalidPaymentPayload(f"Unknown subscription type: {subscriptionType}")
        return SubscriptionCommand(
            memberId=memberId,
            amountCents=amountCents,
            gateway=gateway,
            gatewayRef=gatewayRef,
            subscriptionType=subscriptionType,
            periodEnd=_parse_period_end(payload.get("periodEnd")),
            planId=payload.get("planId")
        )

    if intent == INTENT_CHECKOUT:
        return CheckoutCommand(
            memberId=memberId,
            amountCents=amountCents,
            gateway=gateway,
            gatewayRef=gatewayRef,
            sellerId=payload.get("sellerId"),
            orderRef=payload.get("orderRef")
        )

    if intent == INTENT_WALLET_RECHARGE:
        if gateway == "wallet":
            raise InvalidPaymentPayload("A wallet cannot be recharged from itself")
        return WalletRechargeCommand(
            memberId=memberId,
            amountCents=amountCents,
            gateway=gateway,
            gatewayRef=gatewayRef
        )

    raise InvalidPaymentPayload(f"Unknown payment intent: {intent}")
