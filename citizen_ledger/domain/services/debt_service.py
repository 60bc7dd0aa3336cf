"""
Debt Management Service

Turns a negative ledger balance into a single tracked debt with a grace
period, accrues flat weekly late fees on overdue debts and applies payments.

Every mutation re-reads the debt ``FOR UPDATE`` inside its own transaction;
nothing here trusts a debt object the caller loaded earlier.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from citizen_ledger.core.config import settings
from citizen_ledger.core.exceptions import (
    DebtAlreadySettledError,
    DebtNotFoundError,
    DuplicateActiveDebtError,
    ErrorCode,
    ValidationError,
)
from citizen_ledger.core.logging import get_logger
from citizen_ledger.db.models.outstanding_debt import (
    ACTIVE_DEBT_STATUSES,
    SETTLED_DEBT_STATUSES,
    DebtStatus,
    OutstandingDebt,
)
from citizen_ledger.db.models.reward_transaction import (
    RewardTransaction,
    TransactionSource,
    TransactionStatus,
    TransactionType,
)
from citizen_ledger.domain.services.ledger_service import CENT, ZERO, LedgerService, to_money
from citizen_ledger.domain.services.outbox_service import OutboxService

logger = get_logger(__name__)

DEFAULT_WAIVER_NOTE = "Debt waived by administrator"


@dataclass
class DebtSummary:
    debts: List[OutstandingDebt]
    total_amount: Decimal
    total_late_fees: Decimal
    debt_count: int
    oldest_due_date: Optional[datetime]


@dataclass
class DebtRepair:
    debt_id: str
    changes: dict


def _dec(value) -> Decimal:
    return Decimal(str(value)) if value is not None else ZERO


class DebtManagementService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = LedgerService(db)
        self.outbox_service = OutboxService(db)

    # ==================== Reads ====================

    async def get_debt(self, debt_id: str) -> Optional[OutstandingDebt]:
        result = await self.db.execute(
            select(OutstandingDebt).where(OutstandingDebt.id == debt_id)
        )
        return result.scalar_one_or_none()

    async def _lock_debt(self, debt_id: str) -> OutstandingDebt:
        result = await self.db.execute(
            select(OutstandingDebt)
            .where(OutstandingDebt.id == debt_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        debt = result.scalar_one_or_none()
        if not debt:
            raise DebtNotFoundError(debt_id)
        return debt

    async def _active_debts(self, user_id: str, for_update: bool = False) -> List[OutstandingDebt]:
        query = (
            select(OutstandingDebt)
            .where(
                OutstandingDebt.user_id == user_id,
                OutstandingDebt.status.in_(ACTIVE_DEBT_STATUSES),
            )
            .order_by(OutstandingDebt.created_at)
        )
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_user_debts(self, user_id: str) -> List[OutstandingDebt]:
        """Active debts of a user, earliest due first"""
        result = await self.db.execute(
            select(OutstandingDebt)
            .where(
                OutstandingDebt.user_id == user_id,
                OutstandingDebt.status.in_(ACTIVE_DEBT_STATUSES),
            )
            .order_by(OutstandingDebt.due_date)
        )
        return list(result.scalars().all())

    async def get_total_debt_amount(self, user_id: str) -> Decimal:
        debts = await self.get_user_debts(user_id)
        return sum((max(d.remaining_amount, ZERO) for d in debts), ZERO)

    async def get_debt_summary(self, user_id: str) -> DebtSummary:
        debts = await self.get_user_debts(user_id)
        return DebtSummary(
            debts=debts,
            total_amount=sum((max(d.remaining_amount, ZERO) for d in debts), ZERO),
            total_late_fees=sum((_dec(d.late_fees) for d in debts), ZERO),
            debt_count=len(debts),
            oldest_due_date=debts[0].due_date if debts else None,
        )

    # ==================== Lifecycle ====================

    async def create_debt(
        self,
        user_id: str,
        negative_balance,
        related_transaction_id: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> OutstandingDebt:
        """
        Open a debt for ``|negative_balance|`` due after the grace period.

        Raises:
            DuplicateActiveDebtError: the user already has an active debt
        """
        amount = abs(to_money(negative_balance, field="negative_balance"))
        if amount == 0:
            raise ValidationError(
                "Cannot open a debt for a zero balance",
                field="negative_balance",
                error_code=ErrorCode.INVALID_AMOUNT,
            )
        now = now or datetime.utcnow()

        debt = OutstandingDebt(
            user_id=user_id,
            original_amount=amount,
            current_amount=amount,
            paid_amount=ZERO,
            late_fees=ZERO,
            weeks_past_due=0,
            due_date=now + timedelta(days=settings.DEBT_GRACE_PERIOD_DAYS),
            status=DebtStatus.OUTSTANDING,
            related_transaction_id=related_transaction_id,
            created_at=now,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(debt)
        except IntegrityError:
            logger.error(
                "Active debt already exists, refusing to open a second one",
                extra_data={"user_id": user_id, "amount": str(amount)}
            )
            raise DuplicateActiveDebtError(user_id)

        await self.outbox_service.queue_debt_created(debt)
        if commit:
            await self.db.commit()
            await self.db.refresh(debt)
        else:
            await self.db.flush()

        logger.info(
            "Debt created",
            extra_data={
                "user_id": user_id,
                "debt_id": debt.id,
                "amount": str(amount),
                "due_date": debt.due_date.isoformat(),
            }
        )
        return debt

    @staticmethod
    def calculate_late_fee(original_amount, weeks_past_due: int) -> Decimal:
        """Flat ``LATE_FEE_WEEKLY_RATE`` of the original principal per week"""
        if weeks_past_due < 0:
            raise ValidationError("weeks_past_due must not be negative", field="weeks_past_due")
        original = _dec(original_amount)
        if original < 0:
            raise ValidationError(
                "original_amount must not be negative",
                field="original_amount",
                error_code=ErrorCode.INVALID_AMOUNT,
                details={"original_amount": str(original)},
            )
        fee = original * settings.LATE_FEE_WEEKLY_RATE * weeks_past_due
        return fee.quantize(CENT, rounding=ROUND_HALF_UP)

    async def accrue_late_fees(self, *, now: Optional[datetime] = None) -> int:
        """
        Apply late fees to every overdue OUTSTANDING debt in one transaction.

        A debt is charged only when its whole weeks past due grew since the
        last run, so repeated runs inside the same week add nothing. Each fee
        is mirrored in the ledger as a LATE_FEE deduction.

        Returns:
            Number of debts that received a fee
        """
        now = now or datetime.utcnow()
        updated = 0
        try:
            result = await self.db.execute(
                select(OutstandingDebt)
                .where(
                    OutstandingDebt.status == DebtStatus.OUTSTANDING,
                    OutstandingDebt.due_date < now,
                )
                .order_by(OutstandingDebt.id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            for debt in result.scalars().all():
                days_past_due = (now - debt.due_date).days
                weeks_past_due = days_past_due // 7
                previous_weeks = debt.weeks_past_due or 0
                if weeks_past_due <= previous_weeks:
                    continue

                # Rounded on total weeks so the sum never depends on run frequency
                fee = (
                    self.calculate_late_fee(debt.original_amount, weeks_past_due)
                    - self.calculate_late_fee(debt.original_amount, previous_weeks)
                )
                debt.late_fees = _dec(debt.late_fees) + fee
                debt.current_amount = _dec(debt.original_amount) + debt.late_fees
                debt.weeks_past_due = weeks_past_due
                debt.last_penalty_date = now

                if fee > 0:
                    await self.ledger.record_transaction(
                        debt.user_id,
                        fee,
                        TransactionType.DEDUCTION,
                        TransactionSource.LATE_FEE,
                        related_entity_id=debt.id,
                        description=f"Late fee, week {weeks_past_due} past due",
                        commit=False,
                    )
                updated += 1

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.error(
                "Late fee accrual failed, batch rolled back",
                extra_data={"run_at": now.isoformat()},
                exc_info=True
            )
            raise

        logger.info(
            "Late fee accrual completed",
            extra_data={"debts_updated": updated, "run_at": now.isoformat()}
        )
        return updated

    async def record_payment(
        self,
        debt_id: str,
        amount,
        payment_reference: str,
        *,
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> OutstandingDebt:
        """
        Apply a payment to a debt.

        The ledger receives a balance-neutral DEBT_PAYMENT audit row and a
        REWARD credit of the same amount, so the derived balance moves with
        the debt. With ``commit=False`` the caller owns the transaction.

        Raises:
            ValidationError: ``amount <= 0``
            DebtNotFoundError: unknown debt
            DebtAlreadySettledError: the debt is PAID or WAIVED
        """
        money = to_money(amount)
        if money <= 0:
            raise ValidationError(
                "Payment amount must be positive",
                field="amount",
                error_code=ErrorCode.INVALID_AMOUNT,
                details={"amount": str(money)},
            )
        now = now or datetime.utcnow()

        debt = await self._lock_debt(debt_id)
        if debt.status in SETTLED_DEBT_STATUSES:
            raise DebtAlreadySettledError(debt.id, debt.status.value)

        new_paid = _dec(debt.paid_amount) + money
        remaining = _dec(debt.current_amount) - new_paid
        debt.paid_amount = new_paid
        if remaining <= 0:
            debt.status = DebtStatus.PAID
            debt.paid_at = now
        elif new_paid > 0:
            debt.status = DebtStatus.PARTIAL
        debt.payment_reference = payment_reference

        await self.ledger.record_transaction(
            debt.user_id,
            money,
            TransactionType.DEBT_PAYMENT,
            TransactionSource.DEBT_PAYMENT,
            related_entity_id=debt.id,
            description=f"Debt payment - {payment_reference}",
            commit=False,
        )
        await self.ledger.record_transaction(
            debt.user_id,
            money,
            TransactionType.REWARD,
            TransactionSource.DEBT_PAYMENT,
            related_entity_id=debt.id,
            description=f"Debt payment credit - {payment_reference}",
            commit=False,
        )

        if commit:
            await self.db.commit()
            await self.db.refresh(debt)

        logger.info(
            "Debt payment recorded",
            extra_data={
                "debt_id": debt.id,
                "user_id": debt.user_id,
                "amount": str(money),
                "remaining": str(max(remaining, ZERO)),
                "status": debt.status.value,
                "payment_reference": payment_reference,
            }
        )
        return debt

    async def check_and_create_debt_for_negative_balance(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> Optional[OutstandingDebt]:
        """
        Make the user's active debt match a negative ledger balance.

        No active debt: one is opened. An active debt whose remaining amount
        drifted from ``|balance|`` by more than the epsilon is adjusted:
        ``original += |balance| - remaining`` and
        ``current = paid + |balance|``; paid amounts are never touched.
        """
        for attempt in range(2):
            balance = await self.ledger.compute_balance(user_id)
            if balance >= 0:
                return None
            absolute_balance = -balance

            active = await self._active_debts(user_id, for_update=True)
            if len(active) > 1:
                logger.error(
                    "Multiple active debts found for user",
                    extra_data={"user_id": user_id, "debt_ids": [d.id for d in active]}
                )
                raise DuplicateActiveDebtError(user_id, [d.id for d in active])

            if not active:
                try:
                    return await self.create_debt(user_id, balance, now=now)
                except DuplicateActiveDebtError:
                    # Lost the race to a concurrent check; reconcile the winner's debt
                    await self.db.rollback()
                    if attempt:
                        raise
                    continue

            return await self._reconcile_with_balance(active[0], absolute_balance)

        return None

    async def _reconcile_with_balance(
        self, debt: OutstandingDebt, absolute_balance: Decimal
    ) -> OutstandingDebt:
        remaining = debt.remaining_amount
        delta = absolute_balance - remaining
        if abs(delta) <= settings.DEBT_RECONCILIATION_EPSILON:
            await self.db.commit()
            return debt

        old_original = _dec(debt.original_amount)
        old_late_fees = _dec(debt.late_fees)
        # A credit beyond the principal is taken out of the late fees
        new_original = max(old_original + delta, ZERO)
        debt.original_amount = new_original
        debt.current_amount = _dec(debt.paid_amount) + absolute_balance
        debt.late_fees = debt.current_amount - new_original
        await self.db.commit()
        await self.db.refresh(debt)

        logger.info(
            "Active debt reconciled with ledger balance",
            extra_data={
                "debt_id": debt.id,
                "user_id": debt.user_id,
                "old_original_amount": str(old_original),
                "new_original_amount": str(debt.original_amount),
                "old_late_fees": str(old_late_fees),
                "new_late_fees": str(debt.late_fees),
                "current_amount": str(debt.current_amount),
                "delta": str(delta),
            }
        )
        return debt

    async def waive_debt(
        self, debt_id: str, admin_id: str, notes: Optional[str] = None
    ) -> OutstandingDebt:
        """
        Mark a debt WAIVED; amounts stay as they were for audit.

        The unpaid remainder is credited to the ledger as a DEBT_WAIVER bonus,
        otherwise the next balance check would reopen the same obligation.
        """
        try:
            debt = await self._lock_debt(debt_id)
            remaining = debt.remaining_amount
            was_active = debt.is_active

            debt.status = DebtStatus.WAIVED
            debt.waived_by = admin_id
            debt.notes = notes or DEFAULT_WAIVER_NOTE

            if was_active and remaining > 0:
                await self.ledger.record_transaction(
                    debt.user_id,
                    remaining,
                    TransactionType.BONUS,
                    TransactionSource.DEBT_WAIVER,
                    related_entity_id=debt.id,
                    description=f"Debt {debt.id} waived by {admin_id}",
                    commit=False,
                )
            await self.outbox_service.queue_debt_waived(debt)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(debt)
        logger.info(
            "Debt waived",
            extra_data={
                "debt_id": debt.id,
                "user_id": debt.user_id,
                "admin_id": admin_id,
                "waived_remaining": str(max(remaining, ZERO)),
            }
        )
        return debt

    # ==================== Repair ====================

    def _clamp(self, debt: OutstandingDebt, now: datetime) -> dict:
        """Fix one debt in place; returns the changed fields"""
        before = {
            "original_amount": _dec(debt.original_amount),
            "current_amount": _dec(debt.current_amount),
            "paid_amount": _dec(debt.paid_amount),
            "late_fees": _dec(debt.late_fees),
            "status": debt.status,
        }

        original = max(ZERO, abs(before["original_amount"]))
        late_fees = max(ZERO, abs(before["late_fees"]))
        current = max(ZERO, abs(before["current_amount"]))
        paid = min(max(ZERO, abs(before["paid_amount"])), current)
        status = debt.status

        if status != DebtStatus.WAIVED:
            if current == 0 or paid >= current:
                status = DebtStatus.PAID
            elif status in ACTIVE_DEBT_STATUSES:
                status = DebtStatus.PARTIAL if paid > 0 else DebtStatus.OUTSTANDING

        after = {
            "original_amount": original,
            "current_amount": current,
            "paid_amount": paid,
            "late_fees": late_fees,
            "status": status,
        }
        changes = {k: str(getattr(v, "value", v)) for k, v in after.items() if before[k] != v}

        debt.original_amount = original
        debt.current_amount = current
        debt.paid_amount = paid
        debt.late_fees = late_fees
        debt.status = status
        if status == DebtStatus.PAID and debt.paid_at is None:
            debt.paid_at = now
            changes["paid_at"] = now.isoformat()
        return changes

    async def repair_debt_invariants(self, *, dry_run: bool = False) -> List[DebtRepair]:
        """Clamp negative amounts, cap overpayment and align status with amounts"""
        now = datetime.utcnow()
        result = await self.db.execute(
            select(OutstandingDebt).order_by(OutstandingDebt.created_at).with_for_update()
        )
        repairs = []
        for debt in result.scalars().all():
            changes = self._clamp(debt, now)
            if changes:
                repairs.append(DebtRepair(debt_id=debt.id, changes=changes))

        if dry_run:
            await self.db.rollback()
        else:
            await self.db.commit()

        logger.info(
            "Debt invariants checked",
            extra_data={"repaired": len(repairs), "dry_run": dry_run}
        )
        return repairs

    async def merge_active_debts(self, user_id: str, *, dry_run: bool = False) -> Optional[OutstandingDebt]:
        """
        Fold several active debts of one user into the oldest.

        The others are marked WAIVED with a merge note. Returns the surviving
        debt, or None when there was nothing to merge.
        """
        now = datetime.utcnow()
        active = await self._active_debts(user_id, for_update=True)
        if len(active) <= 1:
            await self.db.rollback()
            return None

        for debt in active:
            self._clamp(debt, now)
        still_active = [d for d in active if d.is_active]
        if len(still_active) <= 1:
            if dry_run:
                await self.db.rollback()
            else:
                await self.db.commit()
            return still_active[0] if still_active else None

        primary, others = still_active[0], still_active[1:]
        total_remaining = sum((max(d.remaining_amount, ZERO) for d in still_active), ZERO)
        total_late_fees = sum((_dec(d.late_fees) for d in still_active), ZERO)

        for debt in others:
            debt.status = DebtStatus.WAIVED
            debt.notes = f"Merged into debt {primary.id} on {now.isoformat()}"

        paid = _dec(primary.paid_amount)
        primary.late_fees = total_late_fees
        primary.current_amount = paid + total_remaining
        primary.original_amount = primary.current_amount - total_late_fees
        primary.status = DebtStatus.PARTIAL if paid > 0 else DebtStatus.OUTSTANDING

        if dry_run:
            await self.db.rollback()
        else:
            await self.db.commit()
            await self.db.refresh(primary)

        logger.warning(
            "Active debts merged",
            extra_data={
                "user_id": user_id,
                "primary_debt_id": primary.id,
                "merged_debt_ids": [d.id for d in others],
                "total_remaining": str(total_remaining),
                "dry_run": dry_run,
            }
        )
        return primary

    async def backfill_debt_payment_credits(self, *, dry_run: bool = False) -> int:
        """Add the REWARD credit missing next to historical DEBT_PAYMENT audit rows"""
        result = await self.db.execute(
            select(RewardTransaction)
            .where(
                RewardTransaction.type == TransactionType.DEBT_PAYMENT,
                RewardTransaction.status == TransactionStatus.COMPLETED,
            )
            .order_by(RewardTransaction.created_at)
        )
        created = 0
        for payment in result.scalars().all():
            reference = (payment.description or "").replace("Debt payment - ", "", 1)
            if not reference:
                continue
            credit_description = f"Debt payment credit - {reference}"
            exists = await self.db.execute(
                select(RewardTransaction.id).where(
                    RewardTransaction.user_id == payment.user_id,
                    RewardTransaction.type == TransactionType.REWARD,
                    RewardTransaction.source == TransactionSource.DEBT_PAYMENT.value,
                    RewardTransaction.description == credit_description,
                    RewardTransaction.status == TransactionStatus.COMPLETED,
                )
            )
            if exists.first():
                continue
            await self.ledger.record_transaction(
                payment.user_id,
                payment.amount,
                TransactionType.REWARD,
                TransactionSource.DEBT_PAYMENT,
                related_entity_id=payment.related_entity_id,
                description=credit_description,
                commit=False,
            )
            created += 1

        if dry_run:
            await self.db.rollback()
        else:
            await self.db.commit()
        return created
