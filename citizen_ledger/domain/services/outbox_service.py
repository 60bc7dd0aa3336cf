"""
Outbox Service - post-commit notifications

Settlement code writes the notification row inside its own transaction; the
outbox worker delivers it after commit through the notifier. A notifier
outage therefore never rolls back or delays a financial write.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from citizen_ledger.core.config import settings
from citizen_ledger.db.models.outbox_message import MessageStatus, OutboxMessage

# Notification template kinds understood by the notifier
DEBT_CREATED = "debt_created"
DEBT_PAYMENT_RECEIVED = "debt_payment_received"
DEBT_WAIVED = "debt_waived"
FINE_PAYMENT_RECEIVED = "fine_payment_received"
GEM_PENALTY_APPLIED = "gem_penalty_applied"


def _calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    ``base_seconds * 2**retry_count`` capped at ``max_backoff_seconds``.

    The power is never materialised for large retry counts.
    """
    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0
    retry_count = max(retry_count, 0)
    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # smallest n with base * 2**n >= max
    saturating_exponent = ((max_backoff_seconds - 1) // base_seconds).bit_length()
    if retry_count >= saturating_exponent:
        return max_backoff_seconds
    return min(base_seconds << retry_count, max_backoff_seconds)


def _money(value) -> str:
    return str(Decimal(str(value)).quantize(Decimal("0.01")))


class OutboxService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def queue_notification(
        self,
        user_id: str,
        template_kind: str,
        payload: dict,
    ) -> OutboxMessage:
        """Add a notification to the current transaction; does not commit"""
        message = OutboxMessage(
            recipient_id=user_id,
            message_type=template_kind,
            message_content=payload,
            status=MessageStatus.PENDING,
            max_retries=5,
        )
        self.db.add(message)
        return message

    async def queue_debt_created(self, debt) -> OutboxMessage:
        return await self.queue_notification(
            debt.user_id,
            DEBT_CREATED,
            {
                "debt_id": debt.id,
                "amount": _money(debt.current_amount),
                "due_date": debt.due_date.isoformat(),
            },
        )

    async def queue_debt_payment(
        self, debt, amount, transaction_id: str
    ) -> OutboxMessage:
        return await self.queue_notification(
            debt.user_id,
            DEBT_PAYMENT_RECEIVED,
            {
                "debt_id": debt.id,
                "amount": _money(amount),
                "remaining": _money(max(debt.remaining_amount, Decimal("0"))),
                "status": debt.status.value,
                "transaction_id": transaction_id,
            },
        )

    async def queue_debt_waived(self, debt) -> OutboxMessage:
        return await self.queue_notification(
            debt.user_id,
            DEBT_WAIVED,
            {"debt_id": debt.id, "notes": debt.notes},
        )

    async def queue_fine_payment(
        self,
        user_id: str,
        fine_ids: List[str],
        amount,
        transaction_id: str,
    ) -> OutboxMessage:
        return await self.queue_notification(
            user_id,
            FINE_PAYMENT_RECEIVED,
            {
                "fine_ids": fine_ids,
                "amount": _money(amount),
                "transaction_id": transaction_id,
            },
        )

    async def queue_gem_penalty(self, penalty, account) -> OutboxMessage:
        return await self.queue_notification(
            penalty.citizen_id,
            GEM_PENALTY_APPLIED,
            {
                "penalty_id": penalty.id,
                "gems_deducted": penalty.amount,
                "severity": penalty.severity.value,
                "reason": penalty.reason,
                "gems_remaining": account.amount,
                "is_restricted": account.is_restricted,
            },
        )

    async def get_pending_messages(self, limit: int = 100) -> List[OutboxMessage]:
        """Pending messages whose backoff window has elapsed, oldest first"""
        now = datetime.utcnow()
        result = await self.db.execute(
            select(OutboxMessage)
            .where(
                OutboxMessage.status == MessageStatus.PENDING,
                or_(OutboxMessage.next_retry_at.is_(None), OutboxMessage.next_retry_at <= now),
            )
            .order_by(OutboxMessage.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _get(self, message_id: int) -> Optional[OutboxMessage]:
        result = await self.db.execute(
            select(OutboxMessage).where(OutboxMessage.id == message_id)
        )
        return result.scalar_one_or_none()

    async def mark_as_processing(self, message_id: int) -> None:
        message = await self._get(message_id)
        if message:
            message.status = MessageStatus.PROCESSING
            await self.db.commit()

    async def mark_as_sent(self, message_id: int) -> None:
        message = await self._get(message_id)
        if message:
            message.status = MessageStatus.SENT
            message.processed_at = datetime.utcnow()
            await self.db.commit()

    async def mark_as_failed(self, message_id: int, error: str) -> None:
        """Count a failed attempt; reschedule with backoff or give up"""
        message = await self._get(message_id)
        if not message:
            return

        message.retry_count = (message.retry_count or 0) + 1
        message.last_error = error[:1000]

        if message.retry_count >= message.max_retries:
            message.status = MessageStatus.FAILED
            message.processed_at = datetime.utcnow()
        else:
            message.status = MessageStatus.PENDING
            backoff_seconds = _calculate_backoff_seconds(
                message.retry_count,
                base_seconds=settings.OUTBOX_RETRY_BASE_SECONDS,
                max_backoff_seconds=settings.OUTBOX_MAX_BACKOFF_SECONDS,
            )
            message.next_retry_at = datetime.utcnow() + timedelta(seconds=backoff_seconds)

        await self.db.commit()
