# tests/test_config.py
"""
Tests for Config, the phase ladder snapshot and the payout provider registry.
"""
import asyncio
from decimal import Decimal

import pytest

from config import Config, ConfigurationError
from models import PhaseLevel
from mlm_settlement.config.phases import PhaseLevelConfig, RewardMode, build_phase_config, load_phase_config
from mlm_settlement.errors import ConfigurationMissing, ExternalProviderFailure
from mlm_settlement.providers import get_payout_provider
from mlm_settlement.providers.generic_provider import BearerPayoutProvider
from mlm_settlement.providers.paypal_provider import PayPalPayoutProvider
from mlm_settlement.providers.stripe_provider import StripePayoutProvider


# =============================================================================
# CONFIG
# =============================================================================

def test_defaults_without_env():
    assert Config.get(Config.COMMISSION_DEPTH) == 2
    assert Config.get(Config.PLATFORM_MIN_PAYOUT_CENTS) == 900
    assert Config.get(Config.STRIPE_SECRET_KEY) is None
    assert Config.get(Config.STRIPE_SECRET_KEY, "sk_x") == "sk_x"


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("COMMISSION_DEPTH", "3")
    monkeypatch.setenv("PHASE_DEMOTION_ENABLED", "yes")
    monkeypatch.setenv("PAYOUT_MODE", "Manual")

    Config.initialize_from_env()

    assert Config.get(Config.COMMISSION_DEPTH) == 3
    assert Config.get(Config.PHASE_DEMOTION_ENABLED) is True
    assert Config.get(Config.PAYOUT_MODE) == "manual"


def test_bad_payout_mode(monkeypatch):
    monkeypatch.setenv("PAYOUT_MODE", "sometimes")
    with pytest.raises(ConfigurationError):
        Config.initialize_from_env()


def test_missing_critical_key():
    Config.set(Config.DATABASE_URL, "")
    with pytest.raises(ConfigurationError):
        asyncio.run(Config.validate_critical_keys())


# =============================================================================
# PHASE CONFIG
# =============================================================================

def test_load_phase_config(session, phase_levels):
    phaseConfig = load_phase_config(session)

    assert sorted(phaseConfig.levels) == [0, 1, 2, 3]
    assert phaseConfig.commissionRate(2) == Decimal("0.30")
    assert phaseConfig.level(1).freeProductRewardMode == RewardMode.MONTHLY
    assert phaseConfig.maxPhase == 3
    assert phaseConfig.version


def test_invalid_reward_mode_row_skipped(session):
    session.add(PhaseLevel(phase=1, commissionRate=Decimal("0.1"), creditRewardMode="weekly"))
    session.commit()

    assert load_phase_config(session).levels == {}


def test_missing_level():
    phaseConfig = build_phase_config({0: PhaseLevelConfig(phase=0)})

    with pytest.raises(ConfigurationMissing):
        phaseConfig.level(2)
    assert phaseConfig.commissionRate(2) == Decimal("0")


def test_version_tracks_levels():
    a = build_phase_config({1: PhaseLevelConfig(phase=1, commissionRate=Decimal("0.15"))})
    b = build_phase_config({1: PhaseLevelConfig(phase=1, commissionRate=Decimal("0.16"))})
    assert a.version != b.version


def test_engine_knobs_follow_config():
    Config.set(Config.COMMISSION_DEPTH, 5)
    assert build_phase_config({}).commissionDepth == 5
    assert build_phase_config({}, commissionDepth=1).commissionDepth == 1


# =============================================================================
# PAYOUT PROVIDERS
# =============================================================================

def test_providers_built_from_config():
    Config.set(Config.STRIPE_SECRET_KEY, "sk_test")
    Config.set(Config.PAYPAL_CLIENT_ID, "client")
    Config.set(Config.PAYPAL_CLIENT_SECRET, "secret")
    Config.set(Config.PAYONEER_API_URL, "https://payoneer.example.com")
    Config.set(Config.PAYONEER_API_KEY, "key")

    assert isinstance(get_payout_provider("stripe"), StripePayoutProvider)
    assert isinstance(get_payout_provider("paypal"), PayPalPayoutProvider)
    payoneer = get_payout_provider("payoneer")
    assert isinstance(payoneer, BearerPayoutProvider)
    assert payoneer.name == "payoneer"


def test_unconfigured_provider():
    with pytest.raises(ExternalProviderFailure) as exc_info:
        get_payout_provider("authorize_net")
    assert exc_info.value.provider == "authorize_net"
