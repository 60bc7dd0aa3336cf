"""
Fixtures and helpers for end-to-end ledger scenarios.

Provides:
- DB assertions for balance, debt state and queued notifications
- a success-callback helper that approves the payment on the fake gateway
"""
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from citizen_ledger.db.models.outbox_message import OutboxMessage
from citizen_ledger.db.models.outstanding_debt import DebtStatus, OutstandingDebt
from citizen_ledger.domain.services.ledger_service import LedgerService
from citizen_ledger.domain.services.reconciliation_service import (
    PaymentReconciliationService,
    SettlementResult,
)

_val_counter = 0


def _next_val_id() -> str:
    global _val_counter
    _val_counter += 1
    return f"VAL-SCENARIO-{_val_counter}"


async def assert_balance(db: AsyncSession, user_id: str, expected) -> None:
    balance = await LedgerService(db).compute_balance(user_id)
    assert balance == Decimal(str(expected)), f"balance {balance} != {expected}"


async def assert_debt_state(
    db: AsyncSession,
    debt_id: str,
    status: DebtStatus,
    *,
    current_amount: Optional[str] = None,
    paid_amount: Optional[str] = None,
) -> OutstandingDebt:
    debt = (await db.execute(
        select(OutstandingDebt)
        .where(OutstandingDebt.id == debt_id)
        .execution_options(populate_existing=True)
    )).scalar_one()
    assert debt.status == status, f"debt {debt_id} is {debt.status}, expected {status}"
    if current_amount is not None:
        assert debt.current_amount == Decimal(current_amount)
    if paid_amount is not None:
        assert debt.paid_amount == Decimal(paid_amount)
    return debt


async def queued_notifications(db: AsyncSession, user_id: str) -> list[str]:
    result = await db.execute(
        select(OutboxMessage.message_type)
        .where(OutboxMessage.recipient_id == user_id)
        .order_by(OutboxMessage.created_at)
    )
    return list(result.scalars().all())


async def pay_through_gateway(
    db: AsyncSession, gateway, transaction_id: str, amount
) -> SettlementResult:
    """Approve ``transaction_id`` on the fake gateway and deliver its success callback"""
    val_id = _next_val_id()
    gateway.approve(val_id, transaction_id, amount)
    return await PaymentReconciliationService(db, gateway).handle_success_callback({
        "tran_id": transaction_id,
        "val_id": val_id,
        "amount": str(amount),
        "status": "VALID",
    })
