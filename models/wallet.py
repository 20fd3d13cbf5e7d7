"""
Wallet models - spendable balance per member and its transaction journal.

WalletAccount.balanceCents is a cache: listeners rewrite it as
SUM(WalletTxn.deltaCents) after every journal change.
"""
from sqlalchemy import Column, Integer, BigInteger, String, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin


class WalletAccount(Base, AuditMixin):
    __tablename__ = 'wallets'

    walletID = Column(Integer, primary_key=True, autoincrement=True)
    memberID = Column(String(64), ForeignKey('members.memberID'), nullable=False, unique=True)
    balanceCents = Column(BigInteger, nullable=False, default=0)

    def __repr__(self):
        return f"<WalletAccount(member={self.memberID}, balance={self.balanceCents})>"


class WalletTxn(Base, AuditMixin):
    __tablename__ = 'wallet_txns'

    txnID = Column(Integer, primary_key=True, autoincrement=True)
    memberID = Column(String(64), ForeignKey('members.memberID'), nullable=False, index=True)

    deltaCents = Column(BigInteger, nullable=False)
    reason = Column(String(32), nullable=False)  # recharge, purchase, earnings_transfer, phase_reward, ...

    gateway = Column(String(32), nullable=True)
    externalRef = Column(String(255), nullable=True)

    # Unique when present: replays of the same external credit are no-ops
    idempotencyKey = Column(String(255), nullable=True, unique=True)
    notes = Column(String, nullable=True)

    member = relationship('Member')

    def __repr__(self):
        return f"<WalletTxn(member={self.memberID}, delta={self.deltaCents}, reason={self.reason})>"
