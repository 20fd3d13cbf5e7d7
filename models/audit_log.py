"""
AdminAuditLog model - every admin override of phases or balances.
"""
from sqlalchemy import Column, Integer, String, JSON
from models.base import Base, AuditMixin


class AdminAuditLog(Base, AuditMixin):
    __tablename__ = 'admin_audit_log'

    auditID = Column(Integer, primary_key=True, autoincrement=True)
    adminID = Column(String(64), nullable=True)
    action = Column(String(64), nullable=False)  # set_phase, clear_phase_override, adjust_wallet, adjust_network_earnings
    memberID = Column(String(64), nullable=False, index=True)

    before = Column(JSON, nullable=True)
    after = Column(JSON, nullable=True)
    note = Column(String, nullable=True)

    def __repr__(self):
        return f"<AdminAuditLog(action={self.action}, member={self.memberID}, admin={self.adminID})>"
