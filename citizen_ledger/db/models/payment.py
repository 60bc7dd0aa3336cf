"""
Payment Model - gateway payment attempts for fines

``transaction_id`` is shared by every row of a multi-fine session.
"""
import enum
import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, Enum as SQLEnum, Numeric, String

from citizen_ledger.db.database import Base


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), nullable=False, index=True)
    fine_id = Column(String(36), nullable=True, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    payment_method = Column(String(50), nullable=False, default="SSLCOMMERZ")
    payment_status = Column(SQLEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)

    transaction_id = Column(String(100), nullable=False, index=True)
    bank_transaction_id = Column(String(100), nullable=True)

    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
