"""
Restriction Service - gem balance and the derived driving restriction

This is the only writer of ``CitizenGem.is_restricted``. Every write path
keeps ``amount <= 0 => is_restricted``; an admin override cannot unrestrict an
exhausted account.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from citizen_ledger.core.config import settings
from citizen_ledger.core.exceptions import ValidationError
from citizen_ledger.core.logging import get_logger
from citizen_ledger.db.models.citizen_gem import CitizenGem
from citizen_ledger.db.models.gem_penalty import GEMS_BY_SEVERITY, GemPenalty, PenaltySeverity
from citizen_ledger.domain.services.outbox_service import OutboxService

logger = get_logger(__name__)


@dataclass
class RestrictionUpdate:
    account: CitizenGem
    overridden: bool  # requested unrestrict was forced back to restricted


class RestrictionService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.outbox_service = OutboxService(db)

    async def get_account(self, citizen_id: str) -> Optional[CitizenGem]:
        result = await self.db.execute(
            select(CitizenGem).where(CitizenGem.citizen_id == citizen_id)
        )
        return result.scalar_one_or_none()

    async def is_restricted(self, citizen_id: str) -> bool:
        """Driving-eligibility check; a citizen with no gem account may not drive"""
        account = await self.get_account(citizen_id)
        return True if account is None else bool(account.is_restricted)

    async def _lock_or_create(self, citizen_id: str, initial_amount: int = 0) -> CitizenGem:
        """
        Lock the citizen's row, creating it first if absent.

        Two first-time writers race on the unique citizen_id; the loser's insert
        is undone in its savepoint and it locks the winner's row instead.
        """
        query = select(CitizenGem).where(CitizenGem.citizen_id == citizen_id).with_for_update()
        account = (await self.db.execute(query)).scalar_one_or_none()
        if account:
            return account

        try:
            async with self.db.begin_nested():
                account = CitizenGem(
                    citizen_id=citizen_id,
                    amount=initial_amount,
                    is_restricted=initial_amount <= 0,
                )
                self.db.add(account)
        except IntegrityError:
            logger.info(
                "Gem account created concurrently, locking existing row",
                extra_data={"citizen_id": citizen_id}
            )
            account = (await self.db.execute(query)).scalar_one()
        return account

    async def _finish(self, account: CitizenGem, commit: bool) -> CitizenGem:
        if commit:
            await self.db.commit()
            await self.db.refresh(account)
        else:
            await self.db.flush()
        return account

    async def adjust_gems(
        self, citizen_id: str, delta: int, *, commit: bool = True
    ) -> CitizenGem:
        """
        Add ``delta`` gems; decreases never go below zero.

        Amount and restriction flag are written in the same flush while the
        row is locked.
        """
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise ValidationError("Gem delta must be an integer", field="delta")

        account = await self._lock_or_create(citizen_id)
        current = account.amount or 0
        new_amount = max(0, current + delta) if delta < 0 else current + delta

        account.amount = new_amount
        account.is_restricted = new_amount <= 0

        logger.info(
            "Gems adjusted",
            extra_data={
                "citizen_id": citizen_id,
                "delta": delta,
                "old_amount": current,
                "new_amount": new_amount,
                "is_restricted": account.is_restricted,
            }
        )
        return await self._finish(account, commit)

    async def set_restriction(
        self, citizen_id: str, requested: bool, *, commit: bool = True
    ) -> RestrictionUpdate:
        """Admin override of the restriction flag, clamped by the gem amount"""
        account = await self._lock_or_create(citizen_id)
        overridden = False

        if (account.amount or 0) <= 0:
            overridden = not requested
            account.is_restricted = True
        else:
            account.is_restricted = bool(requested)

        if overridden:
            logger.warning(
                "Unrestrict request refused: citizen has no gems",
                extra_data={"citizen_id": citizen_id, "amount": account.amount}
            )

        await self._finish(account, commit)
        return RestrictionUpdate(account=account, overridden=overridden)

    async def initialize_for_license(self, citizen_id: str) -> CitizenGem:
        """Open the gem account of a new license holder; existing accounts are untouched"""
        account = await self._lock_or_create(
            citizen_id, initial_amount=settings.LICENSE_STARTING_GEMS
        )
        return await self._finish(account, commit=True)

    async def apply_gem_penalty(
        self,
        citizen_id: str,
        severity: PenaltySeverity | str,
        reason: str,
        applied_by: str,
        violation_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> GemPenalty:
        """Record an officer's gem penalty and deduct the gems atomically"""
        try:
            severity = PenaltySeverity(severity)
        except ValueError:
            raise ValidationError(f"Unknown penalty severity: {severity!r}", field="severity")
        if not reason or not reason.strip():
            raise ValidationError("Penalty reason is required", field="reason")

        gems = GEMS_BY_SEVERITY[severity]
        try:
            penalty = GemPenalty(
                citizen_id=citizen_id,
                amount=gems,
                severity=severity,
                reason=reason.strip(),
                violation_id=violation_id,
                applied_by=applied_by,
                notes=notes,
            )
            self.db.add(penalty)
            account = await self.adjust_gems(citizen_id, -gems, commit=False)
            await self.outbox_service.queue_gem_penalty(penalty, account)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(penalty)
        logger.info(
            "Gem penalty applied",
            extra_data={
                "citizen_id": citizen_id,
                "penalty_id": penalty.id,
                "severity": severity.value,
                "gems": gems,
                "applied_by": applied_by,
            }
        )
        return penalty
