"""
Reward Transaction Model - Immutable Penalty/Reward Ledger

Balance is never stored; it is folded from COMPLETED rows on read.
"""
import enum
import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, Enum as SQLEnum, Index, Numeric, String

from citizen_ledger.db.database import Base


class TransactionType(str, enum.Enum):
    REWARD = "REWARD"
    BONUS = "BONUS"
    PENALTY = "PENALTY"
    DEDUCTION = "DEDUCTION"
    DEBT_PAYMENT = "DEBT_PAYMENT"


class TransactionStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TransactionSource(str, enum.Enum):
    """Well-known ``source`` values; the column itself is free-form"""
    CITIZEN_REPORT = "CITIZEN_REPORT"
    MANUAL = "MANUAL"
    LATE_FEE = "LATE_FEE"
    DEBT_PAYMENT = "DEBT_PAYMENT"
    DEBT_WAIVER = "DEBT_WAIVER"


CREDIT_TYPES = frozenset({TransactionType.REWARD, TransactionType.BONUS})
DEBIT_TYPES = frozenset({TransactionType.PENALTY, TransactionType.DEDUCTION})


class RewardTransaction(Base):
    """One ledger movement; amount is always non-negative, sign comes from type"""

    __tablename__ = "reward_transactions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    type = Column(SQLEnum(TransactionType), nullable=False)
    status = Column(SQLEnum(TransactionStatus), nullable=False, default=TransactionStatus.COMPLETED)

    source = Column(String(50), nullable=False)
    related_entity_id = Column(String(100), nullable=True)
    description = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_reward_transactions_user_created", "user_id", "created_at"),
        Index("ix_reward_transactions_source_entity", "source", "related_entity_id"),
    )
