# tests/test_commission_service.py
"""
Tests for commission calculation (pure functions) and application.
"""
import asyncio
from decimal import Decimal

import pytest

from models import CommissionEvent
from mlm_settlement.config.phases import PhaseLevelConfig, build_phase_config
from mlm_settlement.services.commission_service import (
    AFFILIATE_SPONSOR,
    SELLER,
    UPLINE,
    CommissionService,
    UplineEntry,
    cap_distribution,
    compute_affiliate_sponsor_commission,
    compute_commissions,
    compute_seller_commission,
    floor_cents,
)
from mlm_settlement.services.ledger_service import EarningsLedger


@pytest.fixture
def ladder():
    return build_phase_config(
        {
            0: PhaseLevelConfig(phase=0),
            1: PhaseLevelConfig(phase=1, commissionRate=Decimal("0.15"), affiliateSponsorRate=Decimal("0.05")),
            2: PhaseLevelConfig(phase=2, commissionRate=Decimal("0.30"), affiliateSponsorRate=Decimal("0.08")),
        },
        commissionDepth=2,
        visibleLevels=2,
        demotionEnabled=False
    )


# =============================================================================
# PURE CALCULATION
# =============================================================================

class TestComputeCommissions:

    def test_each_ancestor_paid_at_own_phase_rate(self, ladder):
        chain = [
            UplineEntry("s1", level=1, phase=1, isActive=True),
            UplineEntry("s2", level=2, phase=2, isActive=True),
        ]

        pending = compute_commissions(10000, "buyer", chain, ladder)

        assert [(c.recipientId, c.level, c.amountCents) for c in pending] == [
            ("s1", 1, 1500),
            ("s2", 2, 3000),
        ]
        assert all(c.commissionType == UPLINE for c in pending)

    def test_no_sponsor_no_commissions(self, ladder):
        assert compute_commissions(10000, "buyer", [], ladder) == []

    def test_inactive_ancestor_emits_nothing(self, ladder):
        chain = [
            UplineEntry("s1", level=1, phase=1, isActive=False),
            UplineEntry("s2", level=2, phase=2, isActive=True),
        ]
        pending = compute_commissions(10000, "buyer", chain, ladder)
        assert [c.recipientId for c in pending] == ["s2"]

    def test_phase_zero_ancestor_emits_nothing(self, ladder):
        chain = [UplineEntry("s1", level=1, phase=0, isActive=True)]
        assert compute_commissions(10000, "buyer", chain, ladder) == []

    def test_depth_limits_levels_paid(self, ladder):
        chain = [
            UplineEntry("s1", level=1, phase=1, isActive=True),
            UplineEntry("s2", level=2, phase=1, isActive=True),
            UplineEntry("s3", level=3, phase=2, isActive=True),
        ]
        pending = compute_commissions(10000, "buyer", chain, ladder)
        assert [c.level for c in pending] == [1, 2]

    def test_amounts_are_floored(self, ladder):
        chain = [UplineEntry("s1", level=1, phase=1, isActive=True)]
        pending = compute_commissions(999, "buyer", chain, ladder)
        assert pending[0].amountCents == 149

    def test_missing_phase_level_pays_zero(self, ladder):
        chain = [UplineEntry("s1", level=1, phase=3, isActive=True)]
        assert compute_commissions(10000, "buyer", chain, ladder) == []

    def test_total_never_exceeds_payment(self):
        greedy = build_phase_config(
            {1: PhaseLevelConfig(phase=1, commissionRate=Decimal("0.70"))},
            commissionDepth=2, visibleLevels=2, demotionEnabled=False
        )
        chain = [
            UplineEntry("s1", level=1, phase=1, isActive=True),
            UplineEntry("s2", level=2, phase=1, isActive=True),
        ]
        pending = compute_commissions(1000, "buyer", chain, greedy)

        assert sum(c.amountCents for c in pending) == 1000
        assert pending[1].amountCents == 300


def test_floor_cents():
    assert floor_cents(10000, Decimal("0.15")) == 1500
    assert floor_cents(1, Decimal("0.99")) == 0
    assert floor_cents(333, Decimal("0.333")) == 110


def test_cap_distribution_drops_overflow(ladder):
    chain = [UplineEntry("s1", level=1, phase=2, isActive=True)]
    pending = compute_commissions(1000, "buyer", chain, ladder)
    assert cap_distribution(pending, 0) == []


def test_seller_commission_prefers_ecommerce_override(ladder):
    seller = UplineEntry("shop", level=0, phase=1, isActive=True, ecommerceRate=Decimal("0.25"))
    commission = compute_seller_commission(4000, "buyer", seller, ladder)
    assert commission.amountCents == 1000
    assert commission.commissionType == SELLER
    assert commission.level == 0


def test_seller_commission_falls_back_to_phase_rate(ladder):
    seller = UplineEntry("shop", level=0, phase=2, isActive=True)
    assert compute_seller_commission(4000, "buyer", seller, ladder).amountCents == 1200


def test_affiliate_sponsor_uses_affiliate_phase_rate(ladder):
    sponsor = UplineEntry("boss", level=1, phase=0, isActive=True)
    commission = compute_affiliate_sponsor_commission(4000, "buyer", 2, sponsor, ladder)
    assert commission.amountCents == 320
    assert commission.commissionType == AFFILIATE_SPONSOR


def test_inactive_affiliate_sponsor_earns_nothing(ladder):
    sponsor = UplineEntry("boss", level=1, phase=2, isActive=False)
    assert compute_affiliate_sponsor_commission(4000, "buyer", 2, sponsor, ladder) is None


# =============================================================================
# APPLICATION
# =============================================================================

class TestCommissionService:

    def test_compute_for_payment_reads_tree(self, session, make_member, phase_config):
        make_member("s2", phase=2)
        make_member("s1", sponsor="s2", phase=1)
        buyer = make_member("buyer", sponsor="s1")

        pending = CommissionService(session).computeForPayment(buyer, 10000, phase_config)
        assert [(c.recipientId, c.amountCents) for c in pending] == [("s1", 1500), ("s2", 3000)]

    def test_storefront_sale_pays_seller_and_affiliate_sponsor(self, session, make_member, phase_config):
        make_member("boss", phase=0)
        make_member("shop", sponsor="boss", phase=2)
        buyer = make_member("buyer")

        pending = CommissionService(session).computeForPayment(buyer, 4000, phase_config, sellerId="shop")

        byType = {c.commissionType: c for c in pending}
        assert byType[SELLER].recipientId == "shop"
        assert byType[SELLER].amountCents == 1200
        assert byType[AFFILIATE_SPONSOR].recipientId == "boss"
        assert byType[AFFILIATE_SPONSOR].amountCents == 320

    def test_apply_is_idempotent_per_event(self, session, make_member, phase_config):
        make_member("s1", phase=1)
        buyer = make_member("buyer", sponsor="s1")
        service = CommissionService(session)
        pending = service.computeForPayment(buyer, 10000, phase_config)

        first = asyncio.run(service.applyCommissions(pending, "stripe:pi_1"))
        second = asyncio.run(service.applyCommissions(pending, "stripe:pi_1"))
        session.commit()

        assert len(first) == 1
        assert second == []
        assert session.query(CommissionEvent).count() == 1
        assert EarningsLedger(session).getBalance("s1") == 1500
