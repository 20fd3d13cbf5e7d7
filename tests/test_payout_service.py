# tests/test_payout_service.py
"""
Tests for earnings transfers and auto-payouts, including provider failure
compensation.
"""
import asyncio

import pytest

from config import Config
from models import EarningsTxn, Payout
from mlm_settlement.errors import ExternalProviderFailure, InsufficientFunds, PayoutNotAllowed
from mlm_settlement.events.event_bus import SettlementEvents
from mlm_settlement.providers import PayoutProvider, PayoutReceipt, register_payout_provider
from mlm_settlement.services.ledger_service import EarningsLedger, WalletLedger
from mlm_settlement.services.payout_service import PayoutService


class FakeProvider(PayoutProvider):
    name = "stripe"

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    async def send_payout(self, account_id, amount_cents, reference):
        self.calls.append((account_id, amount_cents, reference))
        if self.fail:
            raise ExternalProviderFailure(self.name, "account restricted")
        return PayoutReceipt(providerRef="tr_123", estimatedArrival="2025-01-03")


@pytest.fixture
def earner(session, make_member):
    def _make(memberId="earner", cents=5000):
        make_member(memberId)
        if cents:
            asyncio.run(EarningsLedger(session).credit(memberId, cents, "commission"))
            session.commit()
        return memberId

    return _make


# =============================================================================
# TRANSFER TO WALLET
# =============================================================================

class TestTransferToWallet:

    def test_moves_both_sides(self, session, earner):
        memberId = earner(cents=3000)

        result = asyncio.run(PayoutService(session).transferEarningsToWallet(memberId, 1000))

        assert result.success
        assert result.earningsBalanceCents == 2000
        assert result.walletBalanceCents == 1000
        assert EarningsLedger(session).getLifetime(memberId) == 3000

    def test_insufficient_changes_nothing(self, session, earner, calc_journal_sum):
        memberId = earner(cents=1000)

        with pytest.raises(InsufficientFunds):
            asyncio.run(PayoutService(session).transferEarningsToWallet(memberId, 2000))

        assert EarningsLedger(session).getBalance(memberId) == 1000
        assert WalletLedger(session).getBalance(memberId) == 0
        assert calc_journal_sum['earnings'](memberId) == 1000

    def test_non_positive_amount(self, session, earner):
        memberId = earner()
        with pytest.raises(ValueError):
            asyncio.run(PayoutService(session).transferEarningsToWallet(memberId, 0))


# =============================================================================
# THRESHOLDS
# =============================================================================

class TestThresholds:

    def test_threshold_clamped_to_platform_minimum(self, session, earner):
        memberId = earner()
        service = PayoutService(session)

        assert asyncio.run(service.setAutoPayoutThreshold(memberId, 100)) == 900
        assert service.getAutoPayoutThreshold(memberId) == 900

    def test_threshold_above_minimum_kept(self, session, earner):
        memberId = earner()
        service = PayoutService(session)

        asyncio.run(service.setAutoPayoutThreshold(memberId, 2500))
        assert service.getAutoPayoutThreshold(memberId) == 2500

    def test_default_threshold_is_platform_minimum(self, session, earner):
        Config.set(Config.PLATFORM_MIN_PAYOUT_CENTS, 1500)
        assert PayoutService(session).getAutoPayoutThreshold(earner()) == 1500


# =============================================================================
# AUTO-PAYOUT
# =============================================================================

class TestAutoPayout:

    def test_success(self, session, earner, make_payout_account, recorded_events):
        memberId = earner(cents=5000)
        make_payout_account(memberId)
        provider = FakeProvider()

        result = asyncio.run(PayoutService(session, providers={"stripe": provider}).processAutoPayout(memberId))

        assert result.processed
        assert result.amountCents == 5000
        assert provider.calls == [(f"acct_{memberId}", 5000, f"payout-{result.payoutId}")]
        assert EarningsLedger(session).getBalance(memberId) == 0

        payout = session.query(Payout).one()
        assert payout.status == "completed"
        assert payout.providerRef == "tr_123"
        assert [name for name, _ in recorded_events] == [SettlementEvents.PAYOUT_COMPLETED]

    def test_provider_failure_reverses_debit(self, session, earner, make_payout_account, recorded_events):
        memberId = earner(cents=5000)
        make_payout_account(memberId)

        service = PayoutService(session, providers={"stripe": FakeProvider(fail=True)})
        with pytest.raises(ExternalProviderFailure) as exc_info:
            asyncio.run(service.processAutoPayout(memberId))

        payout = session.query(Payout).populate_existing().one()
        assert exc_info.value.payoutId == payout.payoutID
        assert payout.status == "failed"
        assert EarningsLedger(session).getBalance(memberId) == 5000
        assert EarningsLedger(session).getLifetime(memberId) == 5000

        reasons = [t.reason for t in session.query(EarningsTxn).order_by(EarningsTxn.txnID)]
        assert reasons == ["commission", "payout_hold", "payout_reversal"]
        assert [name for name, _ in recorded_events] == [SettlementEvents.PAYOUT_FAILED]

    def test_unconfigured_provider_is_a_provider_failure(self, session, earner, make_payout_account):
        memberId = earner(cents=5000)
        make_payout_account(memberId, provider="payoneer")

        with pytest.raises(ExternalProviderFailure):
            asyncio.run(PayoutService(session).processAutoPayout(memberId))

        assert EarningsLedger(session).getBalance(memberId) == 5000

    def test_below_threshold(self, session, earner, make_payout_account):
        memberId = earner(cents=500)
        make_payout_account(memberId)

        result = asyncio.run(PayoutService(session, providers={"stripe": FakeProvider()}).processAutoPayout(memberId))

        assert not result.processed
        assert result.reason == "below_threshold"
        assert session.query(Payout).count() == 0

    def test_manual_mode(self, session, earner, make_payout_account):
        Config.set(Config.PAYOUT_MODE, "manual")
        memberId = earner()
        make_payout_account(memberId)

        result = asyncio.run(PayoutService(session).processAutoPayout(memberId))

        assert not result.processed
        assert result.reason == "manual_mode"
        assert session.query(Payout).count() == 0
        assert EarningsLedger(session).getBalance(memberId) > 0

    def test_no_active_account(self, session, earner, make_payout_account):
        memberId = earner()
        make_payout_account(memberId, status="pending")
        service = PayoutService(session)

        result = asyncio.run(service.processAutoPayout(memberId))

        assert not result.processed
        assert result.reason == "no_payout_account"
        with pytest.raises(PayoutNotAllowed):
            service.requireAutoPayoutAllowed(memberId)

    def test_registered_provider_used(self, session, earner, make_payout_account):
        memberId = earner(cents=1000)
        make_payout_account(memberId, provider="paypal")
        provider = FakeProvider()
        register_payout_provider("paypal", provider)

        result = asyncio.run(PayoutService(session).processAutoPayout(memberId))
        assert result.processed
        assert result.provider == "paypal"

    def test_sweep(self, session, earner, make_payout_account):
        rich = earner("rich", cents=5000)
        poor = earner("poor", cents=100)
        make_payout_account(rich)
        make_payout_account(poor)

        results = asyncio.run(PayoutService(session, providers={"stripe": FakeProvider()}).sweepAutoPayouts())

        assert [r.amountCents for r in results] == [5000]
        assert EarningsLedger(session).getBalance("poor") == 100


def test_failing_a_resolved_payout_is_a_noop(session, earner, make_payout_account):
    memberId = earner(cents=5000)
    make_payout_account(memberId)
    service = PayoutService(session, providers={"stripe": FakeProvider()})
    result = asyncio.run(service.processAutoPayout(memberId))

    assert not asyncio.run(service.failPayout(result.payoutId, "late bounce"))
    assert EarningsLedger(session).getBalance(memberId) == 0
