"""
Subscription model - one billing record per member per subscription type.
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin

SUBSCRIPTION_TYPES = ("mlm", "affiliate")
SUBSCRIPTION_STATUSES = ("active", "past_due", "canceled", "unpaid")


class Subscription(Base, AuditMixin):
    __tablename__ = 'subscriptions'
    __table_args__ = (
        UniqueConstraint('memberID', 'subscriptionType', name='uq_subscription_member_type'),
    )

    subscriptionID = Column(Integer, primary_key=True, autoincrement=True)
    memberID = Column(String(64), ForeignKey('members.memberID'), nullable=False, index=True)

    subscriptionType = Column(String(16), nullable=False, default="mlm")  # mlm | affiliate
    status = Column(String(16), nullable=False, default="unpaid")  # active | past_due | canceled | unpaid

    currentPeriodEnd = Column(DateTime, nullable=True)
    gateway = Column(String(32), nullable=True)
    planID = Column(String(64), nullable=True)
    cancelAtPeriodEnd = Column(Boolean, default=False, nullable=False)

    member = relationship('Member', backref='subscriptions')

    @property
    def isActive(self) -> bool:
        return self.status == "active"

    def __repr__(self):
        return (
            f"<Subscription(member={self.memberID}, type={self.subscriptionType}, "
            f"status={self.status}, periodEnd={self.currentPeriodEnd})>"
        )
