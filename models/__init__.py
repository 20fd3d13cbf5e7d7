"""
Database models for the settlement engine.
Import all models here so that Base.metadata knows every table.
"""

# Base and mixins
from models.base import Base, AuditMixin

# Core models
from models.member import Member
from models.subscription import Subscription
from models.payment import Payment
from models.wallet import WalletAccount, WalletTxn
from models.network_earnings import NetworkEarnings, EarningsTxn
from models.commission_event import CommissionEvent
from models.payout import PayoutAccount, PayoutPreference, Payout
from models.audit_log import AdminAuditLog

# MLM models
from models.phase_level import PhaseLevel
from models.phase_record import PhaseRecord
from models.mlm.phase_reward import PhaseReward
from models.mlm.phase_history import PhaseHistory

# Event listeners
from models.listeners import register_all_listeners

__all__ = [
    # Base
    'Base',
    'AuditMixin',

    # Core
    'Member',
    'Subscription',
    'Payment',
    'WalletAccount',
    'WalletTxn',
    'NetworkEarnings',
    'EarningsTxn',
    'CommissionEvent',
    'PayoutAccount',
    'PayoutPreference',
    'Payout',
    'AdminAuditLog',

    # MLM
    'PhaseLevel',
    'PhaseRecord',
    'PhaseReward',
    'PhaseHistory',

    # Listeners
    'register_all_listeners',
]
