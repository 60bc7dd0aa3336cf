"""
Outstanding Debt Model

At most one debt per user may be OUTSTANDING or PARTIAL; the partial unique
index enforces it on PostgreSQL and SQLite alike.
"""
import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Column, DateTime, Enum as SQLEnum, Index, Integer, Numeric, String, text

from citizen_ledger.db.database import Base


class DebtStatus(str, enum.Enum):
    OUTSTANDING = "OUTSTANDING"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    WAIVED = "WAIVED"


ACTIVE_DEBT_STATUSES = (DebtStatus.OUTSTANDING, DebtStatus.PARTIAL)
SETTLED_DEBT_STATUSES = (DebtStatus.PAID, DebtStatus.WAIVED)

_ACTIVE_PREDICATE = text("status IN ('OUTSTANDING', 'PARTIAL')")


class OutstandingDebt(Base):
    __tablename__ = "outstanding_debts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), nullable=False, index=True)

    original_amount = Column(Numeric(12, 2), nullable=False)
    current_amount = Column(Numeric(12, 2), nullable=False)
    paid_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    late_fees = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    weeks_past_due = Column(Integer, nullable=False, default=0)

    due_date = Column(DateTime, nullable=False)
    status = Column(SQLEnum(DebtStatus), nullable=False, default=DebtStatus.OUTSTANDING, index=True)
    last_penalty_date = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)

    payment_reference = Column(String(100), nullable=True)
    related_transaction_id = Column(String(36), nullable=True)
    notes = Column(String(1000), nullable=True)
    waived_by = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index(
            "uq_outstanding_debts_active_user",
            "user_id",
            unique=True,
            postgresql_where=_ACTIVE_PREDICATE,
            sqlite_where=_ACTIVE_PREDICATE,
        ),
        Index("ix_outstanding_debts_status_due", "status", "due_date"),
    )

    @property
    def remaining_amount(self) -> Decimal:
        return Decimal(self.current_amount) - Decimal(self.paid_amount)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_DEBT_STATUSES
