"""
Member model - a participant account in the referral tree.
"""
from sqlalchemy import Column, String, Boolean, Numeric, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin


class Member(Base, AuditMixin):
    __tablename__ = 'members'

    memberID = Column(String(64), primary_key=True)

    # Direct upline, fixed at registration (admin tools may rewrite it)
    sponsorID = Column(String(64), ForeignKey('members.memberID'), nullable=True, index=True)

    email = Column(String, nullable=True)
    name = Column(String, nullable=True)
    lang = Column(String(8), default="en")

    # Soft deactivation only, never deleted while financial history exists
    isDeactivated = Column(Boolean, default=False, nullable=False)

    # Seller commission override for affiliate storefront sales (fraction 0-1)
    ecommerceCommissionRate = Column(Numeric(6, 4), nullable=True)

    # Relationships
    sponsor = relationship('Member', remote_side=[memberID], backref='directReferrals')

    def __repr__(self):
        return f"<Member(memberID={self.memberID}, sponsorID={self.sponsorID})>"
