"""
Payment model - confirmed gateway payments.

Doubles as the idempotency claim for settlement: the (gateway, gatewayRef)
pair is unique in the store, so a second delivery of the same gateway
event cannot insert a second row.
"""
from sqlalchemy import Column, Integer, BigInteger, String, DateTime, JSON, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin


class Payment(Base, AuditMixin):
    __tablename__ = 'payments'
    __table_args__ = (
        UniqueConstraint('gateway', 'gatewayRef', name='uq_payment_gateway_ref'),
    )

    # Primary key
    paymentID = Column(Integer, primary_key=True, autoincrement=True)

    # Relations
    memberID = Column(String(64), ForeignKey('members.memberID'), nullable=False, index=True)

    # Gateway identity of the event
    gateway = Column(String(32), nullable=False)  # stripe, paypal, wallet, authorize_net, payoneer
    gatewayRef = Column(String(255), nullable=False)

    # Payment details
    intent = Column(String(32), nullable=False)  # checkout | subscription | wallet_recharge
    amountCents = Column(BigInteger, nullable=False)
    status = Column(String(16), nullable=False, default="processed")
    periodEnd = Column(DateTime, nullable=True)

    # Resolved command, kept for reconciliation re-runs
    payload = Column(JSON, nullable=True)

    # Relationships
    member = relationship('Member', backref='payments')

    @property
    def originRef(self) -> str:
        return f"{self.gateway}:{self.gatewayRef}"

    def __repr__(self):
        return f"<Payment(paymentID={self.paymentID}, {self.gateway}:{self.gatewayRef}, amount={self.amountCents})>"
