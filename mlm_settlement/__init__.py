# mlm_settlement/__init__.py
"""
Settlement engine - commissions, phase progression and payouts.
"""

# Services
from mlm_settlement.services.ledger_service import WalletLedger, EarningsLedger
from mlm_settlement.services.commission_service import CommissionService, compute_commissions
from mlm_settlement.services.phase_service import PhaseService
from mlm_settlement.services.phase_reward_service import PhaseRewardService
from mlm_settlement.services.settlement_service import SettlementService, SettlementResult
from mlm_settlement.services.subscription_service import SubscriptionService
from mlm_settlement.services.payout_service import PayoutService
from mlm_settlement.services.admin_service import AdminService
from mlm_settlement.services.reconciliation_service import ReconciliationService

# Configuration
from mlm_settlement.config.phases import PhaseConfig, PhaseLevelConfig, load_phase_config

# Payments
from mlm_settlement.payments.intents import parse_payment_intent

# Utilities
from mlm_settlement.utils.time_machine import timeMachine

# Events
from mlm_settlement.events.event_bus import eventBus, SettlementEvents

__all__ = [
    # Services
    'WalletLedger',
    'EarningsLedger',
    'CommissionService',
    'compute_commissions',
    'PhaseService',
    'PhaseRewardService',
    'SettlementService',
    'SettlementResult',
    'SubscriptionService',
    'PayoutService',
    'AdminService',
    'ReconciliationService',

    # Config
    'PhaseConfig',
    'PhaseLevelConfig',
    'load_phase_config',

    # Payments
    'parse_payment_intent',

    # Utils
    'timeMachine',

    # Events
    'eventBus',
    'SettlementEvents',
]
