"""
Payout models - external payout accounts, per-member preferences and
individual payout attempts.
"""
from sqlalchemy import Column, Integer, BigInteger, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin

PAYOUT_PROVIDERS = ("stripe", "paypal", "authorize_net", "payoneer")


class PayoutAccount(Base, AuditMixin):
    __tablename__ = 'payout_accounts'
    __table_args__ = (
        UniqueConstraint('memberID', 'provider', name='uq_payout_account_member_provider'),
    )

    payoutAccountID = Column(Integer, primary_key=True, autoincrement=True)
    memberID = Column(String(64), ForeignKey('members.memberID'), nullable=False, index=True)

    provider = Column(String(32), nullable=False)  # stripe | paypal | authorize_net | payoneer
    status = Column(String(16), nullable=False, default="pending")  # pending | active | restricted | disabled
    accountID = Column(String(255), nullable=True)  # provider-side account / email

    member = relationship('Member', backref='payoutAccounts')

    def __repr__(self):
        return f"<PayoutAccount(member={self.memberID}, provider={self.provider}, status={self.status})>"


class PayoutPreference(Base, AuditMixin):
    __tablename__ = 'payout_preferences'

    preferenceID = Column(Integer, primary_key=True, autoincrement=True)
    memberID = Column(String(64), ForeignKey('members.memberID'), nullable=False, unique=True)
    autoPayoutThresholdCents = Column(BigInteger, nullable=True)


class Payout(Base, AuditMixin):
    __tablename__ = 'payouts'

    payoutID = Column(Integer, primary_key=True, autoincrement=True)
    memberID = Column(String(64), ForeignKey('members.memberID'), nullable=False, index=True)

    provider = Column(String(32), nullable=False)
    accountID = Column(String(255), nullable=True)
    amountCents = Column(BigInteger, nullable=False)

    # pending: earnings debited, provider not yet confirmed
    status = Column(String(16), nullable=False, default="pending")  # pending | completed | failed
    providerRef = Column(String(255), nullable=True)
    estimatedArrival = Column(String(64), nullable=True)
    failureReason = Column(String, nullable=True)
    resolvedAt = Column(DateTime, nullable=True)

    member = relationship('Member')

    def __repr__(self):
        return f"<Payout(payoutID={self.payoutID}, member={self.memberID}, amount={self.amountCents}, status={self.status})>"
