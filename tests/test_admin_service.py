# tests/test_admin_service.py
"""
Tests for audited admin overrides.
"""
import asyncio

import pytest

from models import AdminAuditLog, PhaseRecord, WalletTxn
from mlm_settlement.services.admin_service import AdminService
from mlm_settlement.services.ledger_service import EarningsLedger, WalletLedger
from mlm_settlement.services.phase_service import PhaseService


@pytest.fixture
def admin(session):
    return AdminService(session, adminId="ops-1")


def test_set_phase_freezes_progression_without_rewards(session, admin, make_member, phase_config):
    make_member("m")
    make_member("kid", sponsor="m")

    asyncio.run(admin.setPhase("m", 3, phase_config, note="promo"))

    record = session.query(PhaseRecord).filter_by(memberID="m").one()
    assert record.phase == 3
    assert record.highestPhaseAchieved == 3
    assert record.manualPhaseOverride
    assert not record.phase3Granted
    assert WalletLedger(session).getBalance("m") == 0

    evaluation = asyncio.run(PhaseService(session).evaluateMember("m", phase_config))
    assert evaluation.skipped == "manual_override"

    entry = session.query(AdminAuditLog).one()
    assert entry.action == "set_phase"
    assert entry.adminID == "ops-1"
    assert entry.before == {"phase": 0, "manualPhaseOverride": False}
    assert entry.after == {"phase": 3, "manualPhaseOverride": True}


def test_clear_override_resumes_evaluation(session, admin, make_member, phase_config):
    make_member("m")
    make_member("kid", sponsor="m")
    asyncio.run(admin.setPhase("m", 0, phase_config))

    asyncio.run(admin.clearPhaseOverride("m"))
    evaluation = asyncio.run(PhaseService(session).evaluateMember("m", phase_config))

    assert evaluation.skipped is None
    assert evaluation.newPhase == 1


def test_set_phase_rejects_out_of_range(admin, make_member, phase_config):
    make_member("m")
    with pytest.raises(ValueError):
        asyncio.run(admin.setPhase("m", 4, phase_config))


def test_set_phase_unknown_member(admin, phase_config):
    with pytest.raises(ValueError):
        asyncio.run(admin.setPhase("ghost", 1, phase_config))


def test_adjust_wallet_writes_journal(session, admin, make_member, calc_journal_sum):
    make_member("m")
    asyncio.run(WalletLedger(session).credit("m", 1000, "recharge"))
    session.commit()

    assert asyncio.run(admin.adjustWallet("m", 250, note="chargeback")) == 250

    adjustment = session.query(WalletTxn).filter_by(reason="admin_adjustment").one()
    assert adjustment.deltaCents == -750
    assert calc_journal_sum['wallet']("m") == 250
    assert session.query(AdminAuditLog).one().after == {"balanceCents": 250}


def test_adjust_network_earnings(session, admin, make_member):
    make_member("m")

    assert asyncio.run(admin.adjustNetworkEarnings("m", 4200)) == 4200
    assert EarningsLedger(session).getBalance("m") == 4200
    # Adjustments are not earnings
    assert EarningsLedger(session).getLifetime("m") == 0


def test_negative_target_rejected(session, admin, make_member):
    make_member("m")
    with pytest.raises(ValueError):
        asyncio.run(admin.adjustWallet("m", -1))
    assert session.query(AdminAuditLog).count() == 0
