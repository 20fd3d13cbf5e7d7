# tests/test_events.py
"""
Tests for the event bus, notification templates and event handlers.
"""
import asyncio

import pytest

from mlm_settlement.events import handlers
from mlm_settlement.events.event_bus import EventBus, SettlementEvents, eventBus
from mlm_settlement.events.setup import setup_settlement_event_handlers, teardown_settlement_event_handlers
from notifications import NotificationService, format_cents


class FakeMailer:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []
        self.tagged = []

    async def send_email(self, to, subject, text_body, html_body=None, tags=(), variables=None):
        if self.fail:
            raise RuntimeError("mailgun down")
        self.sent.append((to, subject, text_body))
        self.tagged.append((list(tags), dict(variables or {})))
        return True


# =============================================================================
# EVENT BUS
# =============================================================================

def test_failing_handler_does_not_stop_others():
    bus = EventBus()
    seen = []

    async def broken(data):
        raise RuntimeError("boom")

    async def working(data):
        seen.append(data["x"])

    bus.subscribe("evt", broken)
    bus.subscribe("evt", working)
    asyncio.run(bus.emit("evt", {"x": 1}))

    assert seen == [1]


def test_subscribe_is_idempotent_and_unsubscribe_works():
    bus = EventBus()

    async def handler(data):
        pass

    bus.subscribe("evt", handler)
    bus.subscribe("evt", handler)
    assert bus.handlers("evt") == [handler]

    bus.unsubscribe("evt", handler)
    assert bus.handlers("evt") == []


def test_setup_and_teardown_register_all_handlers():
    setup_settlement_event_handlers()
    assert handlers.handle_phase_changed in eventBus.handlers(SettlementEvents.PHASE_CHANGED)
    assert handlers.handle_payout_failed in eventBus.handlers(SettlementEvents.PAYOUT_FAILED)

    teardown_settlement_event_handlers()
    assert eventBus.handlers(SettlementEvents.PAYMENT_SETTLED) == []


# =============================================================================
# NOTIFICATIONS
# =============================================================================

def test_format_cents():
    assert format_cents(150000) == "$1500.00"
    assert format_cents(5) == "$0.05"


def test_send_renders_template():
    mailer = FakeMailer()
    service = NotificationService(provider=mailer)

    sent = asyncio.run(service.send("a@example.com", "phase_changed", {
        "name": "Ann", "previousPhase": 1, "newPhase": 2,
    }))

    assert sent
    to, subject, body = mailer.sent[0]
    assert subject == "Your phase is now 2"
    assert "from 1 to 2" in body
    assert mailer.tagged[0] == (["phase_changed"], {"memberId": None, "template": "phase_changed"})


def test_send_never_raises():
    service = NotificationService(provider=FakeMailer(fail=True))
    assert not asyncio.run(service.send("a@example.com", "payout_failed", {
        "name": "Ann", "amount": "$1.00", "provider": "stripe",
    }))
    assert not asyncio.run(service.send("a@example.com", "no_such_template", {}))


def test_without_provider_nothing_is_sent():
    service = NotificationService()
    service.initialize()
    assert not asyncio.run(service.send("a@example.com", "phase_changed", {}))


# =============================================================================
# HANDLERS
# =============================================================================

@pytest.fixture
def mailer(monkeypatch, session_factory):
    mailer = FakeMailer()
    monkeypatch.setattr(handlers, "get_session", session_factory)
    monkeypatch.setattr(handlers, "notificationService", NotificationService(provider=mailer))
    return mailer


def test_commission_notification_per_recipient(mailer, make_member):
    make_member("s1", email="s1@example.com")
    make_member("s2", email="s2@example.com")

    asyncio.run(handlers.handle_payment_settled({
        "commissions": [
            {"recipientId": "s1", "amountCents": 1500, "level": 1},
            {"recipientId": "s2", "amountCents": 3000, "level": 2},
        ]
    }))

    assert [(to, body.split("\n\n")[1]) for to, _, body in mailer.sent] == [
        ("s1@example.com", "$15.00 was added to your network earnings."),
        ("s2@example.com", "$30.00 was added to your network earnings."),
    ]
    assert [variables["memberId"] for _, variables in mailer.tagged] == ["s1", "s2"]


def test_unknown_member_is_skipped(mailer):
    asyncio.run(handlers.handle_phase_changed({"memberId": "ghost", "previousPhase": 0, "newPhase": 1}))
    assert mailer.sent == []


def test_settlement_emits_through_handlers(mailer, make_member, session, phase_levels):
    from mlm_settlement.services.settlement_service import SettlementService

    make_member("s1", phase=1, email="s1@example.com")
    make_member("buyer", sponsor="s1", active=False)
    setup_settlement_event_handlers()

    asyncio.run(SettlementService(session).handleConfirmedPayment({
        "memberId": "buyer", "amountCents": 10000, "gateway": "stripe", "gatewayRef": "pi_evt",
    }))

    assert ("s1@example.com", "You earned a commission") in [(to, subject) for to, subject, _ in mailer.sent]
