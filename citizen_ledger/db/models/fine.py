"""
Fine Model - the part of a traffic fine the ledger settles
"""
import enum
import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, Enum as SQLEnum, Numeric, String

from citizen_ledger.db.database import Base


class FineStatus(str, enum.Enum):
    UNPAID = "UNPAID"
    PAID = "PAID"


class Fine(Base):
    __tablename__ = "fines"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(SQLEnum(FineStatus), nullable=False, default=FineStatus.UNPAID)

    issued_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    paid_at = Column(DateTime, nullable=True)
