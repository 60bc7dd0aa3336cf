"""
Gem Penalty Model - officer-applied gem deductions (immutable)
"""
import enum
import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, Enum as SQLEnum, Integer, String

from citizen_ledger.db.database import Base


class PenaltySeverity(str, enum.Enum):
    MINOR = "MINOR"
    MODERATE = "MODERATE"
    SERIOUS = "SERIOUS"
    SEVERE = "SEVERE"
    CRITICAL = "CRITICAL"


GEMS_BY_SEVERITY: dict[PenaltySeverity, int] = {
    PenaltySeverity.MINOR: 1,
    PenaltySeverity.MODERATE: 2,
    PenaltySeverity.SERIOUS: 3,
    PenaltySeverity.SEVERE: 5,
    PenaltySeverity.CRITICAL: 10,
}


class GemPenalty(Base):
    __tablename__ = "gem_penalties"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    citizen_id = Column(String(36), nullable=False, index=True)

    amount = Column(Integer, nullable=False)
    severity = Column(SQLEnum(PenaltySeverity), nullable=False)
    reason = Column(String(500), nullable=False)
    violation_id = Column(String(36), nullable=True)
    applied_by = Column(String(36), nullable=False)
    notes = Column(String(1000), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
