"""
PhaseReward model - month-bucketed reward for members holding a phase.
At most one row per (member, phase, month).
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, UniqueConstraint
from models.base import Base, AuditMixin


class PhaseReward(Base, AuditMixin):
    __tablename__ = 'phase_rewards'
    __table_args__ = (
        UniqueConstraint('memberID', 'phase', 'periodMonth', name='uq_phase_reward_period'),
    )

    rewardID = Column(Integer, primary_key=True, autoincrement=True)
    memberID = Column(String(64), ForeignKey('members.memberID'), nullable=False, index=True)
    phase = Column(Integer, nullable=False)
    periodMonth = Column(String(7), nullable=False)  # "2025-01"

    hasFreeProduct = Column(Boolean, nullable=False, default=False)
    freeProductUsed = Column(Boolean, nullable=False, default=False)
    creditRemainingCents = Column(Integer, nullable=False, default=0)

    expiresAt = Column(DateTime, nullable=True)

    def __repr__(self):
        return (
            f"<PhaseReward(member={self.memberID}, phase={self.phase}, "
            f"month={self.periodMonth}, credit={self.creditRemainingCents})>"
        )
