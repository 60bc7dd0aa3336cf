"""
Transaction Log Model - audit trail of settled gateway payments
"""
import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Enum as SQLEnum, Numeric, String

from citizen_ledger.db.database import Base


class ReferenceType(str, enum.Enum):
    DEBT = "DEBT"
    FINE = "FINE"


class TransactionLog(Base):
    __tablename__ = "transaction_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    reference_id = Column(String(100), nullable=False, index=True)
    reference_type = Column(SQLEnum(ReferenceType), nullable=False)

    amount = Column(Numeric(12, 2), nullable=False)
    transaction_id = Column(String(100), nullable=False, index=True)
    provider = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False)
    meta = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
