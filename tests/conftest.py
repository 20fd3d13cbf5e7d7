# tests/conftest.py
"""
Pytest configuration and shared fixtures for the settlement engine tests.

Every test gets a fresh in-memory SQLite ledger store with the balance
listeners registered. Services are async; tests drive them with
asyncio.run().

Run:
    pytest tests/ -v
"""
from contextlib import contextmanager
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import Config
from core.db import build_engine
from models import (
    Base,
    Member,
    Subscription,
    PhaseLevel,
    PhaseRecord,
    WalletTxn,
    EarningsTxn,
    PayoutAccount,
)
from models.listeners import register_all_listeners
from mlm_settlement.config.phases import load_phase_config
from mlm_settlement.events.event_bus import eventBus
from mlm_settlement.providers import clear_payout_providers
from mlm_settlement.utils.time_machine import timeMachine

# =============================================================================
# PHASE LADDER
# =============================================================================

PHASE_LEVELS = [
    # phase, rate, discount, affiliate sponsor, credit, free product, direct, team
    dict(phase=0, commissionRate=Decimal("0"), subscriptionDiscountRate=Decimal("0"),
         affiliateSponsorRate=Decimal("0"), oneTimeCreditCents=0, freeProductValueCents=0,
         directReferralsRequired=0, teamSizeRequired=0),
    dict(phase=1, commissionRate=Decimal("0.15"), subscriptionDiscountRate=Decimal("0.10"),
         affiliateSponsorRate=Decimal("0.05"), oneTimeCreditCents=500, freeProductValueCents=2000,
         directReferralsRequired=1, teamSizeRequired=0),
    dict(phase=2, commissionRate=Decimal("0.30"), subscriptionDiscountRate=Decimal("0.20"),
         affiliateSponsorRate=Decimal("0.08"), oneTimeCreditCents=1000, freeProductValueCents=3000,
         directReferralsRequired=2, teamSizeRequired=3),
    dict(phase=3, commissionRate=Decimal("0.40"), subscriptionDiscountRate=Decimal("0.30"),
         affiliateSponsorRate=Decimal("0.10"), oneTimeCreditCents=2000, freeProductValueCents=5000,
         directReferralsRequired=3, teamSizeRequired=6),
]


# =============================================================================
# GLOBAL STATE
# =============================================================================

@pytest.fixture(scope="session", autouse=True)
def setup_listeners():
    """Register listeners once at test session start."""
    register_all_listeners()


@pytest.fixture(autouse=True)
def clean_globals():
    """Config, clock, event bus and provider registry start empty for every test."""
    Config.reset()
    timeMachine.resetToRealTime()
    eventBus.clear()
    clear_payout_providers()
    yield
    Config.reset()
    timeMachine.resetToRealTime()
    eventBus.clear()
    clear_payout_providers()


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    engine = build_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """Database session for each test."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def session_ctx(session_factory):
    """Drop-in for core.db.get_db_session_ctx bound to the test database."""

    @contextmanager
    def _ctx():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return _ctx


@pytest.fixture
def phase_levels(session):
    """Seed the four-phase ladder."""
    for values in PHASE_LEVELS:
        session.add(PhaseLevel(name=f"Phase {values['phase']}", **values))
    session.commit()
    return PHASE_LEVELS


@pytest.fixture
def phase_config(session, phase_levels):
    return load_phase_config(session)


# =============================================================================
# MEMBER FIXTURES
# =============================================================================

@pytest.fixture
def make_member(session):
    """
    Factory: make_member("alice", sponsor="bob", active=True, phase=1).

    active=True gives the member an 'mlm' subscription running for 30 days.
    phase creates the PhaseRecord directly (no rewards).
    """

    def _make(memberId, sponsor=None, active=True, phase=None, email=None, **kwargs):
        member = Member(
            memberID=memberId,
            sponsorID=sponsor,
            email=email or f"{memberId}@example.com",
            name=memberId.capitalize(),
            **kwargs
        )
        session.add(member)

        if active:
            session.add(Subscription(
                memberID=memberId,
                subscriptionType="mlm",
                status="active",
                currentPeriodEnd=timeMachine.now + timedelta(days=30),
                cancelAtPeriodEnd=False
            ))

        if phase is not None:
            session.add(PhaseRecord(
                memberID=memberId,
                phase=phase,
                highestPhaseAchieved=phase,
                manualPhaseOverride=False
            ))

        session.commit()
        return member

    return _make


@pytest.fixture
def make_payout_account(session):
    def _make(memberId, provider="stripe", status="active", accountID=None):
        account = PayoutAccount(
            memberID=memberId,
            provider=provider,
            status=status,
            accountID=accountID or f"acct_{memberId}"
        )
        session.add(account)
        session.commit()
        return account

    return _make


# =============================================================================
# HELPER FIXTURES
# =============================================================================

@pytest.fixture
def calc_journal_sum(session):
    """
    Calculator for real journal sum.

    Returns dict with 'wallet' and 'earnings' functions.
    Each function takes memberID and returns SUM(deltaCents).
    """

    def _calc_wallet(member_id: str) -> int:
        return int(session.query(
            func.coalesce(func.sum(WalletTxn.deltaCents), 0)
        ).filter(WalletTxn.memberID == member_id).scalar())

    def _calc_earnings(member_id: str) -> int:
        return int(session.query(
            func.coalesce(func.sum(EarningsTxn.deltaCents), 0)
        ).filter(EarningsTxn.memberID == member_id).scalar())

    return {'wallet': _calc_wallet, 'earnings': _calc_earnings}


@pytest.fixture
def recorded_events():
    """Subscribe a recorder to every settlement event; returns the list of (name, data)."""
    from mlm_settlement.events.event_bus import SettlementEvents

    events = []

    def _recorder(name):
        async def _handler(data):
            events.append((name, data))
        return _handler

    for name in (
            SettlementEvents.PAYMENT_SETTLED,
            SettlementEvents.PHASE_CHANGED,
            SettlementEvents.PAYOUT_COMPLETED,
            SettlementEvents.PAYOUT_FAILED,
    ):
        eventBus.subscribe(name, _recorder(name))

    return events
