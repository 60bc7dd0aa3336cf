"""
Outbox Message Model - notifications written in the settling transaction
and delivered after commit by a worker
"""
import enum
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Enum as SQLEnum, Integer, String

from citizen_ledger.db.database import Base


class MessageStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class OutboxMessage(Base):
    __tablename__ = "outbox_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)

    recipient_id = Column(String(36), nullable=False)  # user id
    message_type = Column(String(50), nullable=False)  # notification template kind
    message_content = Column(JSON, nullable=False)

    status = Column(SQLEnum(MessageStatus), default=MessageStatus.PENDING, index=True)
    retry_count = Column(Integer, default=0)
    max_retries = Column(Integer, default=5)

    created_at = Column(DateTime, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)

    last_error = Column(String(1000), nullable=True)
