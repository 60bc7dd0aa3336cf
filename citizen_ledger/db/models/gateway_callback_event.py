"""
Gateway Callback Event Model - idempotency table for payment callbacks.

One row per (callback kind, tran_id). The row is inserted in the same
transaction as the settlement, so it exists exactly when the settlement
committed; a redelivered callback finds it and is acknowledged without effect.
"""
from datetime import datetime

from sqlalchemy import Column, DateTime, Index, String

from citizen_ledger.db.database import Base


class GatewayCallbackEvent(Base):
    __tablename__ = "gateway_callback_events"

    event_key = Column(String(200), primary_key=True)
    kind = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default="completed")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_gateway_callback_events_created", "created_at"),
    )

    @staticmethod
    def make_key(kind: str, tran_id: str) -> str:
        return f"{kind}:{tran_id}"
