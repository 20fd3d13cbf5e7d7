# tests/test_settlement_service.py
"""
Tests for payment settlement: idempotency, atomicity and per-intent flows.
"""
import asyncio

import pytest

from models import CommissionEvent, Payment, Subscription, WalletTxn, EarningsTxn
from mlm_settlement.errors import DuplicatePayment, InsufficientFunds, InvalidPaymentPayload, UplineResolutionFailure
from mlm_settlement.events.event_bus import SettlementEvents
from mlm_settlement.payments.intents import parse_payment_intent
from mlm_settlement.services.commission_service import CommissionService
from mlm_settlement.services.ledger_service import EarningsLedger, WalletLedger
from mlm_settlement.services.settlement_service import SettlementService


def subscription_payment(memberId="buyer", ref="pi_1", amount=10000, **extra):
    payload = {
        "intent": "subscription",
        "memberId": memberId,
        "amountCents": amount,
        "gateway": "stripe",
        "gatewayRef": ref,
    }
    payload.update(extra)
    return payload


@pytest.fixture
def tree(make_member, phase_levels):
    """s2 (phase 2) <- s1 (phase 1) <- buyer (not yet subscribed)"""
    make_member("s2", phase=2)
    make_member("s1", sponsor="s2", phase=1)
    return make_member("buyer", sponsor="s1", active=False)


def settle(session, payment):
    return asyncio.run(SettlementService(session).handleConfirmedPayment(payment))


# =============================================================================
# SUBSCRIPTION PAYMENTS
# =============================================================================

class TestSubscriptionSettlement:

    def test_upline_commissions_credited(self, session, tree):
        result = settle(session, subscription_payment())

        earnings = EarningsLedger(session)
        assert not result.alreadyProcessed
        assert earnings.getBalance("s1") == 1500
        assert earnings.getBalance("s2") == 3000
        assert result.totalCommissionCents == 4500

    def test_replay_is_a_noop(self, session, tree):
        settle(session, subscription_payment())
        journalBefore = session.query(EarningsTxn).count()

        replay = settle(session, subscription_payment())

        assert replay.alreadyProcessed
        assert session.query(EarningsTxn).count() == journalBefore
        assert session.query(Payment).count() == 1
        assert EarningsLedger(session).getBalance("s1") == 1500

    def test_subscription_activated(self, session, tree):
        settle(session, subscription_payment(planId="pro"))

        subscription = session.query(Subscription).filter_by(memberID="buyer").one()
        assert subscription.status == "active"
        assert subscription.planID == "pro"
        assert subscription.currentPeriodEnd is not None

    def test_new_active_member_reevaluates_upline(self, session, make_member, phase_levels, recorded_events):
        make_member("sponsor", phase=0)
        make_member("newbie", sponsor="sponsor", active=False)

        result = settle(session, subscription_payment(memberId="newbie"))

        assert [(c.memberId, c.newPhase) for c in result.phaseChanges] == [("sponsor", 1)]
        phaseEvents = [d for name, d in recorded_events if name == SettlementEvents.PHASE_CHANGED]
        assert phaseEvents[0]["memberId"] == "sponsor"
        assert phaseEvents[0]["newPhase"] == 1

    def test_settled_event_emitted_once(self, session, tree, recorded_events):
        settle(session, subscription_payment())
        settle(session, subscription_payment())

        settled = [d for name, d in recorded_events if name == SettlementEvents.PAYMENT_SETTLED]
        assert len(settled) == 1
        assert {c["recipientId"] for c in settled[0]["commissions"]} == {"s1", "s2"}

    def test_buyer_without_sponsor(self, session, make_member, phase_levels):
        make_member("lonely", active=False)
        result = settle(session, subscription_payment(memberId="lonely"))

        assert result.commissions == []
        assert session.query(Payment).count() == 1


# =============================================================================
# FAILURES
# =============================================================================

class TestSettlementFailures:

    def test_cycle_rolls_back_everything(self, session, make_member, phase_levels):
        a = make_member("a", phase=1)
        make_member("b", sponsor="a", phase=1)
        a.sponsorID = "b"
        session.commit()

        with pytest.raises(UplineResolutionFailure):
            settle(session, subscription_payment(memberId="a"))

        assert session.query(Payment).count() == 0
        assert session.query(CommissionEvent).count() == 0

        # Claim was rolled back too: a retry is processed again, not skipped
        with pytest.raises(UplineResolutionFailure):
            settle(session, subscription_payment(memberId="a"))

    def test_unknown_buyer(self, session, phase_levels):
        with pytest.raises(InvalidPaymentPayload):
            settle(session, subscription_payment(memberId="ghost"))

    def test_invalid_payload(self, session, tree):
        with pytest.raises(InvalidPaymentPayload):
            settle(session, subscription_payment(amount=-5))

    def test_wallet_payment_insufficient_funds(self, session, tree):
        payment = subscription_payment(gateway="wallet", ref="w_1")

        with pytest.raises(InsufficientFunds):
            settle(session, payment)

        assert session.query(Payment).count() == 0
        assert EarningsLedger(session).getBalance("s1") == 0
        assert session.query(Subscription).filter_by(memberID="buyer").count() == 0

    def test_claim_raises_duplicate_on_existing_key(self, session, tree):
        settle(session, subscription_payment())

        with pytest.raises(DuplicatePayment):
            SettlementService(session)._claim(parse_payment_intent(subscription_payment()))
        session.rollback()


# =============================================================================
# INDEPENDENT DELIVERIES
# =============================================================================

class TestIndependentDeliveries:

    def test_same_gateway_ref_from_two_sessions_settles_once(self, session, session_factory, tree):
        results = []
        for _ in range(2):
            worker = session_factory()
            try:
                results.append(settle(worker, subscription_payment(ref="pi_dup")))
            finally:
                worker.close()

        assert [r.alreadyProcessed for r in results] == [False, True]
        assert session.query(Payment).count() == 1
        assert session.query(CommissionEvent).count() == 2
        assert EarningsLedger(session).getBalance("s1") == 1500

    def test_claim_already_committed_by_another_worker(self, session, session_factory, tree):
        other = session_factory()
        other.add(Payment(
            memberID="buyer", gateway="stripe", gatewayRef="pi_race",
            intent="subscription", amountCents=10000, status="processed"
        ))
        other.commit()
        other.close()

        result = settle(session, subscription_payment(ref="pi_race"))

        assert result.alreadyProcessed
        assert session.query(CommissionEvent).count() == 0
        assert session.query(EarningsTxn).count() == 0

    def test_failure_mid_fan_out_leaves_nothing(self, session, tree, monkeypatch):
        original = CommissionService.applyCommission
        calls = []

        async def failing_second(self, commission, originRef):
            calls.append(commission.recipientId)
            if len(calls) == 2:
                raise RuntimeError("earnings store unavailable")
            return await original(self, commission, originRef)

        monkeypatch.setattr(CommissionService, "applyCommission", failing_second)

        with pytest.raises(RuntimeError):
            settle(session, subscription_payment(ref="pi_mid"))

        assert calls == ["s1", "s2"]
        assert session.query(Payment).count() == 0
        assert session.query(CommissionEvent).count() == 0
        assert session.query(EarningsTxn).count() == 0
        assert EarningsLedger(session).getBalance("s1") == 0

        monkeypatch.setattr(CommissionService, "applyCommission", original)
        retry = settle(session, subscription_payment(ref="pi_mid"))
        assert not retry.alreadyProcessed
        assert EarningsLedger(session).getBalance("s1") == 1500
        assert EarningsLedger(session).getBalance("s2") == 3000


# =============================================================================
# WALLET AND CHECKOUT
# =============================================================================

class TestWalletAndCheckout:

    def test_wallet_recharge_pays_no_commissions(self, session, tree):
        result = settle(session, {
            "intent": "wallet_recharge",
            "memberId": "buyer",
            "amountCents": 5000,
            "gateway": "paypal",
            "gatewayRef": "pp_1",
        })

        assert result.commissions == []
        assert WalletLedger(session).getBalance("buyer") == 5000
        assert session.query(CommissionEvent).count() == 0

    def test_wallet_subscription_debits_wallet(self, session, tree):
        asyncio.run(WalletLedger(session).credit("buyer", 12000, "recharge"))
        session.commit()

        settle(session, subscription_payment(gateway="wallet", ref="w_1"))

        assert WalletLedger(session).getBalance("buyer") == 2000
        purchase = session.query(WalletTxn).filter_by(reason="purchase").one()
        assert purchase.idempotencyKey == "payment:wallet:w_1"
        assert EarningsLedger(session).getBalance("s1") == 1500

    def test_storefront_checkout(self, session, make_member, phase_levels):
        make_member("boss", phase=0)
        make_member("shop", sponsor="boss", phase=2)
        make_member("customer")

        result = settle(session, {
            "intent": "checkout",
            "buyerId": "customer",
            "amountCents": 4000,
            "gateway": "stripe",
            "gatewayRef": "pi_shop",
            "sellerId": "shop",
            "orderRef": "order-17",
        })

        earnings = EarningsLedger(session)
        assert earnings.getBalance("shop") == 1200
        assert earnings.getBalance("boss") == 320
        assert result.intent == "checkout"
