#!/usr/bin/env python3
"""
Repair legacy finance data.

Steps:
    1. Per-debt invariants: negative amounts clamped, overpayment capped,
       status aligned with amounts
    2. Users with several active debts get them merged into the oldest
    3. Historical DEBT_PAYMENT rows get their missing REWARD credit

Usage (from the project root):
    python scripts/reconcile_finance.py
    python scripts/reconcile_finance.py --user-id <id> --dry-run
"""
import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from sqlalchemy import distinct, select  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: E402

from citizen_ledger.core.config import settings  # noqa: E402
from citizen_ledger.core.logging import get_logger, setup_logging  # noqa: E402
from citizen_ledger.db.models.outstanding_debt import ACTIVE_DEBT_STATUSES, OutstandingDebt  # noqa: E402
from citizen_ledger.domain.services.debt_service import DebtManagementService  # noqa: E402

logger = get_logger("reconcile_finance")


async def reconcile_finance(
    db: AsyncSession,
    user_id: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    service = DebtManagementService(db)

    repairs = await service.repair_debt_invariants(dry_run=dry_run)
    if user_id:
        own_debt_ids = await _debt_ids_of(db, user_id)
        repairs = [r for r in repairs if r.debt_id in own_debt_ids]
        user_ids = [user_id]
    else:
        result = await db.execute(
            select(distinct(OutstandingDebt.user_id)).where(
                OutstandingDebt.status.in_(ACTIVE_DEBT_STATUSES)
            )
        )
        user_ids = [row[0] for row in result.all()]

    merged_users = []
    for uid in user_ids:
        if await service.merge_active_debts(uid, dry_run=dry_run):
            merged_users.append(uid)

    credits_created = await service.backfill_debt_payment_credits(dry_run=dry_run)

    summary = {
        "debts_repaired": len(repairs),
        "users_merged": len(merged_users),
        "credits_backfilled": credits_created,
        "dry_run": dry_run,
    }
    logger.info("Finance reconciliation completed", extra_data=summary)
    return summary


async def _debt_ids_of(db: AsyncSession, user_id: str) -> set[str]:
    result = await db.execute(select(OutstandingDebt.id).where(OutstandingDebt.user_id == user_id))
    return {row[0] for row in result.all()}


async def _main(user_id: Optional[str], dry_run: bool) -> int:
    from citizen_ledger.db.database import get_task_session

    async with get_task_session() as db:
        summary = await reconcile_finance(db, user_id=user_id, dry_run=dry_run)

    prefix = "[dry run] " if dry_run else ""
    print(f"{prefix}Per-debt invariants fixed: {summary['debts_repaired']}")
    print(f"{prefix}Users with merged active debts: {summary['users_merged']}")
    print(f"{prefix}Debt payment credits backfilled: {summary['credits_backfilled']}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Repair legacy debt and ledger data")
    parser.add_argument("--user-id", help="limit merging to one user")
    parser.add_argument("--dry-run", action="store_true", help="report without writing")
    args = parser.parse_args()

    setup_logging(level="INFO", json_format=not settings.DEBUG, app_name=settings.APP_NAME)
    try:
        return asyncio.run(_main(args.user_id, args.dry_run))
    except Exception as e:
        logger.error("Finance reconciliation failed", extra_data={"error": str(e)}, exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
