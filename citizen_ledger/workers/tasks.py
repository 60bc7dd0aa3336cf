"""
Celery Tasks

Scheduler side of the ledger: late fee accrual, negative balance checks,
outbox delivery and idempotency-table cleanup. Each task runs its coroutine
on a fresh event loop with its own database session.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, distinct, select

from citizen_ledger.core.config import settings
from citizen_ledger.core.logging import get_logger, log_async_operation, set_correlation_id
from citizen_ledger.db.database import get_task_session
from citizen_ledger.db.models.gateway_callback_event import GatewayCallbackEvent
from citizen_ledger.db.models.outbox_message import OutboxMessage
from citizen_ledger.db.models.reward_transaction import RewardTransaction
from citizen_ledger.domain.services.debt_service import DebtManagementService
from citizen_ledger.domain.services.notifier import get_notifier
from citizen_ledger.domain.services.outbox_service import OutboxService
from citizen_ledger.workers.celery_app import celery_app

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """New event loop per task; pending tasks are cancelled before it closes"""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    set_correlation_id()
    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="citizen_ledger.workers.tasks.accrue_late_fees")
def accrue_late_fees():
    """Apply weekly late fees to overdue debts (one transaction per run)"""

    @log_async_operation("accrue_late_fees")
    async def _accrue():
        async with get_task_session() as db:
            updated = await DebtManagementService(db).accrue_late_fees()
            return {"debts_updated": updated}

    return run_async(_accrue())


@celery_app.task(name="citizen_ledger.workers.tasks.check_negative_balance")
def check_negative_balance(user_id: str):
    """Open or reconcile the user's debt after a ledger write"""

    @log_async_operation("check_negative_balance")
    async def _check():
        async with get_task_session() as db:
            debt = await DebtManagementService(db).check_and_create_debt_for_negative_balance(user_id)
            return {"user_id": user_id, "debt_id": debt.id if debt else None}

    return run_async(_check())


@celery_app.task(name="citizen_ledger.workers.tasks.sweep_negative_balances")
def sweep_negative_balances():
    """Run the negative balance check for every user with ledger activity"""

    @log_async_operation("sweep_negative_balances")
    async def _sweep():
        async with get_task_session() as db:
            result = await db.execute(select(distinct(RewardTransaction.user_id)))
            user_ids = [row[0] for row in result.all()]

        checked, with_debt, failed = 0, 0, []
        for user_id in user_ids:
            async with get_task_session() as db:
                try:
                    debt = await DebtManagementService(db).check_and_create_debt_for_negative_balance(user_id)
                except Exception as e:
                    logger.error(
                        "Negative balance check failed",
                        extra_data={"user_id": user_id, "error": str(e)},
                        exc_info=True
                    )
                    failed.append(user_id)
                    continue
            checked += 1
            if debt:
                with_debt += 1

        logger.info(
            "Negative balance sweep completed",
            extra_data={"checked": checked, "with_debt": with_debt, "failed": len(failed)}
        )
        return {"checked": checked, "with_debt": with_debt, "failed": failed}

    return run_async(_sweep())


async def _deliver(message: OutboxMessage) -> tuple[bool, Optional[str]]:
    """Deliver one outbox message in its own session"""
    async with get_task_session() as db:
        outbox_service = OutboxService(db)
        await outbox_service.mark_as_processing(message.id)
        try:
            await get_notifier().notify(
                message.recipient_id, message.message_type, message.message_content
            )
        except Exception as e:
            logger.warning(
                "Notification delivery failed, will retry",
                extra_data={
                    "message_id": message.id,
                    "message_type": message.message_type,
                    "retry_count": message.retry_count,
                    "error": str(e),
                }
            )
            await outbox_service.mark_as_failed(message.id, str(e))
            return False, str(e)

        await outbox_service.mark_as_sent(message.id)
        return True, None


@celery_app.task(name="citizen_ledger.workers.tasks.process_outbox_messages")
def process_outbox_messages():
    """Deliver pending notifications written by settled transactions"""

    @log_async_operation("process_outbox_messages")
    async def _process():
        async with get_task_session() as db:
            messages = await OutboxService(db).get_pending_messages(limit=50)

        results = []
        for message in messages:
            success, error = await _deliver(message)
            results.append({"message_id": message.id, "success": success, "error": error})
        return results

    return run_async(_process())


@celery_app.task(name="citizen_ledger.workers.tasks.cleanup_old_callback_events")
def cleanup_old_callback_events(days: Optional[int] = None):
    """Purge gateway callback idempotency rows past the retention window"""
    days = days if days is not None else settings.CALLBACK_EVENT_RETENTION_DAYS

    @log_async_operation("cleanup_old_callback_events")
    async def _cleanup():
        async with get_task_session() as db:
            cutoff = datetime.utcnow() - timedelta(days=days)
            result = await db.execute(
                delete(GatewayCallbackEvent).where(GatewayCallbackEvent.created_at < cutoff)
            )
            await db.commit()
            logger.info(
                "Cleaned up old gateway callback events",
                extra_data={"deleted": result.rowcount, "cutoff_days": days},
            )
            return {"deleted": result.rowcount}

    return run_async(_cleanup())
