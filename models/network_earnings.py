"""
Network earnings models - commission income pending transfer to the wallet
or to an external payout provider.

NetworkEarnings.availableCents / lifetimeCents are caches rebuilt from
EarningsTxn by the balance listeners.
"""
from sqlalchemy import Column, Integer, BigInteger, String, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin

# Reasons that count towards lifetime earnings
EARNING_REASONS = ("commission", "affiliate_commission", "seller_commission")


class NetworkEarnings(Base, AuditMixin):
    __tablename__ = 'network_earnings'

    earningsID = Column(Integer, primary_key=True, autoincrement=True)
    memberID = Column(String(64), ForeignKey('members.memberID'), nullable=False, unique=True)

    availableCents = Column(BigInteger, nullable=False, default=0)
    lifetimeCents = Column(BigInteger, nullable=False, default=0)

    def __repr__(self):
        return (
            f"<NetworkEarnings(member={self.memberID}, available={self.availableCents}, "
            f"lifetime={self.lifetimeCents})>"
        )


class EarningsTxn(Base, AuditMixin):
    __tablename__ = 'network_earnings_txns'

    txnID = Column(Integer, primary_key=True, autoincrement=True)
    memberID = Column(String(64), ForeignKey('members.memberID'), nullable=False, index=True)

    deltaCents = Column(BigInteger, nullable=False)
    reason = Column(String(32), nullable=False)  # commission, wallet_transfer, payout_hold, payout_reversal, ...

    externalRef = Column(String(255), nullable=True)
    idempotencyKey = Column(String(255), nullable=True, unique=True)
    notes = Column(String, nullable=True)

    member = relationship('Member')

    def __repr__(self):
        return f"<EarningsTxn(member={self.memberID}, delta={self.deltaCents}, reason={self.reason})>"
