"""
CommissionEvent model - immutable record of one commission tied to one
originating payment. Unique per (payment, recipient, level, type).
"""
from sqlalchemy import Column, Integer, BigInteger, String, Numeric, ForeignKey, UniqueConstraint
from models.base import Base, AuditMixin


class CommissionEvent(Base, AuditMixin):
    __tablename__ = 'commission_events'
    __table_args__ = (
        UniqueConstraint(
            'originRef', 'recipientID', 'level', 'commissionType',
            name='uq_commission_origin_recipient_level'
        ),
    )

    commissionID = Column(Integer, primary_key=True, autoincrement=True)

    # "<gateway>:<gatewayRef>" of the originating payment
    originRef = Column(String(255), nullable=False, index=True)

    payerID = Column(String(64), ForeignKey('members.memberID'), nullable=False, index=True)
    recipientID = Column(String(64), ForeignKey('members.memberID'), nullable=False, index=True)

    level = Column(Integer, nullable=False)  # 1 = direct sponsor; 0 = seller's own cut
    commissionType = Column(String(32), nullable=False, default="upline")  # upline | affiliate_sponsor | seller

    amountCents = Column(BigInteger, nullable=False)
    rate = Column(Numeric(6, 4), nullable=False)
    recipientPhase = Column(Integer, nullable=True)
    paymentAmountCents = Column(BigInteger, nullable=False)

    def __repr__(self):
        return (
            f"<CommissionEvent(origin={self.originRef}, recipient={self.recipientID}, "
            f"level={self.level}, amount={self.amountCents})>"
        )
