"""
Database Models
"""
from citizen_ledger.db.models.citizen_gem import CitizenGem
from citizen_ledger.db.models.fine import Fine, FineStatus
from citizen_ledger.db.models.gateway_callback_event import GatewayCallbackEvent
from citizen_ledger.db.models.gem_penalty import GemPenalty, PenaltySeverity
from citizen_ledger.db.models.outbox_message import MessageStatus, OutboxMessage
from citizen_ledger.db.models.outstanding_debt import DebtStatus, OutstandingDebt
from citizen_ledger.db.models.payment import Payment, PaymentStatus
from citizen_ledger.db.models.reward_transaction import (
    RewardTransaction,
    TransactionSource,
    TransactionStatus,
    TransactionType,
)
from citizen_ledger.db.models.transaction_log import ReferenceType, TransactionLog

__all__ = [
    "CitizenGem",
    "Fine",
    "FineStatus",
    "GatewayCallbackEvent",
    "GemPenalty",
    "PenaltySeverity",
    "MessageStatus",
    "OutboxMessage",
    "DebtStatus",
    "OutstandingDebt",
    "Payment",
    "PaymentStatus",
    "RewardTransaction",
    "TransactionSource",
    "TransactionStatus",
    "TransactionType",
    "ReferenceType",
    "TransactionLog",
]
