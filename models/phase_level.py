"""
PhaseLevel model - admin-curated configuration, one row per phase.
Read into an immutable PhaseConfig snapshot before each settlement run.
"""
from sqlalchemy import Column, Integer, String, Numeric
from models.base import Base, AuditMixin


class PhaseLevel(Base, AuditMixin):
    __tablename__ = 'phase_levels'

    phaseLevelID = Column(Integer, primary_key=True, autoincrement=True)
    phase = Column(Integer, nullable=False, unique=True)  # 0..3
    name = Column(String, nullable=True)

    # Rates (fractions 0-1)
    commissionRate = Column(Numeric(6, 4), nullable=False, default=0)
    subscriptionDiscountRate = Column(Numeric(6, 4), nullable=False, default=0)
    affiliateSponsorRate = Column(Numeric(6, 4), nullable=False, default=0)

    # Rewards (integer cents)
    oneTimeCreditCents = Column(Integer, nullable=False, default=0)
    freeProductValueCents = Column(Integer, nullable=False, default=0)

    # one_time: paid once ever, guarded by phaseN_granted
    # monthly:  re-granted once per calendar month into phase_rewards
    creditRewardMode = Column(String(16), nullable=False, default="one_time")
    freeProductRewardMode = Column(String(16), nullable=False, default="monthly")

    # Unlock thresholds (active members)
    directReferralsRequired = Column(Integer, nullable=False, default=0)
    teamSizeRequired = Column(Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<PhaseLevel(phase={self.phase}, rate={self.commissionRate})>"
