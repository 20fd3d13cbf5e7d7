"""
PhaseRecord model - one per member, tracks the current MLM phase and
which one-time phase rewards have already been paid.
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Numeric, ForeignKey
from sqlalchemy.orm import relationship, backref
from models.base import Base, AuditMixin


class PhaseRecord(Base, AuditMixin):
    __tablename__ = 'phases'

    phaseRecordID = Column(Integer, primary_key=True, autoincrement=True)
    memberID = Column(String(64), ForeignKey('members.memberID'), nullable=False, unique=True)

    phase = Column(Integer, nullable=False, default=0)
    highestPhaseAchieved = Column(Integer, nullable=False, default=0)

    # Admin-set; freezes automatic progression until cleared
    manualPhaseOverride = Column(Boolean, nullable=False, default=False)

    # One-time reward flags: only ever go False -> True
    phase1Granted = Column(Boolean, nullable=False, default=False)
    phase2Granted = Column(Boolean, nullable=False, default=False)
    phase3Granted = Column(Boolean, nullable=False, default=False)

    phase2AchievedAt = Column(DateTime, nullable=True)

    # Effective seller commission rate for the member's current phase
    ecommerceCommission = Column(Numeric(6, 4), nullable=True)

    member = relationship('Member', backref=backref('phaseRecord', uselist=False))

    def isGranted(self, phase: int) -> bool:
        return bool(getattr(self, f"phase{phase}Granted", False))

    def markGranted(self, phase: int) -> None:
        if phase in (1, 2, 3):
            setattr(self, f"phase{phase}Granted", True)

    def __repr__(self):
        return (
            f"<PhaseRecord(member={self.memberID}, phase={self.phase}, "
            f"highest={self.highestPhaseAchieved}, manual={self.manualPhaseOverride})>"
        )
