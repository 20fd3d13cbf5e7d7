# mlm_settlement/errors.py
"""
Settlement error taxonomy.

Every error raised by the engine derives from SettlementError so callers
(webhook handlers, scheduler jobs) can catch the whole family at once.
"""
from typing import Optional


class SettlementError(Exception):
    """Base class for settlement engine errors."""
    pass


class DuplicatePayment(SettlementError):
    """Gateway reference already processed. A defined no-op, not a failure."""

    def __init__(self, gateway: str, gatewayRef: str):
        self.gateway = gateway
        self.gatewayRef = gatewayRef
        super().__init__(f"Payment {gateway}:{gatewayRef} already processed")


class InsufficientFunds(SettlementError):
    """Debit exceeds the available balance."""

    def __init__(self, memberId: str, requestedCents: int, availableCents: int, ledger: str = "wallet"):
        self.memberId = memberId
        self.requestedCents = requestedCents
        self.availableCents = availableCents
        self.ledger = ledger
        super().__init__(
            f"Insufficient {ledger} funds for member {memberId}: "
            f"requested {requestedCents}, available {availableCents}"
        )


class UplineResolutionFailure(SettlementError):
    """Sponsor chain could not be resolved (cycle or store failure)."""

    def __init__(self, memberId: str, message: str):
        self.memberId = memberId
        super().__init__(f"Upline resolution failed for member {memberId}: {message}")


class ConfigurationMissing(SettlementError):
    """No PhaseLevel row for a required phase."""

    def __init__(self, phase: int):
        self.phase = phase
        super().__init__(f"No phase level configured for phase {phase}")


class ExternalProviderFailure(SettlementError):
    """Payout provider unreachable, timed out or rejected the transfer."""

    def __init__(self, provider: str, message: str, payoutId: Optional[int] = None):
        self.provider = provider
        self.payoutId = payoutId
        super().__init__(f"Payout provider '{provider}' failed: {message}")


class InvalidPaymentPayload(SettlementError):
    """Gateway payload cannot be resolved into a settlement command."""
    pass


class PayoutNotAllowed(SettlementError):
    """Auto-payout preconditions not met (manual mode, no active account)."""

    def __init__(self, message: str, reason: str):
        self.reason = reason
        super().__init__(message)
