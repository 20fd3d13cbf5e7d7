"""
PhaseHistory model - every phase transition, natural or admin-made.
"""
from sqlalchemy import Column, Integer, String, ForeignKey
from models.base import Base, AuditMixin


class PhaseHistory(Base, AuditMixin):
    __tablename__ = 'phase_history'

    historyID = Column(Integer, primary_key=True, autoincrement=True)
    memberID = Column(String(64), ForeignKey('members.memberID'), nullable=False, index=True)

    previousPhase = Column(Integer, nullable=False)
    newPhase = Column(Integer, nullable=False)
    method = Column(String(16), nullable=False)  # natural | demotion | admin

    directActive = Column(Integer, nullable=True)
    teamActive = Column(Integer, nullable=True)

    def __repr__(self):
        return f"<PhaseHistory(member={self.memberID}, {self.previousPhase}->{self.newPhase}, {self.method})>"
