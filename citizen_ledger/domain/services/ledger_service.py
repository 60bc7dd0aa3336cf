"""
Ledger Service - append-only reward/penalty ledger and derived balance

The balance is never stored. Every read folds the COMPLETED rows, so the many
independent write paths (report review, manual penalties, debt settlement,
late fees) cannot race on a shared counter.
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from citizen_ledger.core.exceptions import ErrorCode, ValidationError
from citizen_ledger.core.logging import get_logger
from citizen_ledger.db.models.reward_transaction import (
    CREDIT_TYPES,
    DEBIT_TYPES,
    RewardTransaction,
    TransactionSource,
    TransactionStatus,
    TransactionType,
)

logger = get_logger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value, field: str = "amount") -> Decimal:
    """Parse ``value`` into a finite Decimal rounded half-up to cents."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(
            f"{field} is not a number: {value!r}",
            field=field,
            error_code=ErrorCode.INVALID_AMOUNT,
        )
    if not amount.is_finite():
        raise ValidationError(
            f"{field} must be finite", field=field, error_code=ErrorCode.INVALID_AMOUNT
        )
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def _parse_type(value) -> TransactionType:
    try:
        return TransactionType(value)
    except ValueError:
        raise ValidationError(
            f"Unknown transaction type: {value!r}",
            field="type",
            error_code=ErrorCode.INVALID_TRANSACTION_TYPE,
        )


@dataclass(frozen=True)
class BalanceSummary:
    user_id: str
    total_earned: Decimal
    total_penalties: Decimal
    total_debt_payments: Decimal
    balance: Decimal


class LedgerService:
    """Penalty/reward ledger for a citizen"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record_transaction(
        self,
        user_id: str,
        amount,
        type: TransactionType | str,
        source: str,
        related_entity_id: Optional[str] = None,
        description: Optional[str] = None,
        *,
        commit: bool = True,
    ) -> RewardTransaction:
        """
        Append a COMPLETED ledger row.

        ``amount`` is a non-negative magnitude; the sign comes from ``type``.
        With ``commit=False`` the row is only flushed and the caller owns the
        transaction.
        """
        tx_type = _parse_type(type)
        money = to_money(amount)
        if money < 0:
            raise ValidationError(
                "Ledger amounts are magnitudes and must not be negative",
                field="amount",
                error_code=ErrorCode.INVALID_AMOUNT,
                details={"amount": str(money)},
            )

        transaction = RewardTransaction(
            user_id=user_id,
            amount=money,
            type=tx_type,
            status=TransactionStatus.COMPLETED,
            source=str(getattr(source, "value", source)),
            related_entity_id=related_entity_id,
            description=description,
        )
        self.db.add(transaction)
        if commit:
            await self.db.commit()
            await self.db.refresh(transaction)
        else:
            await self.db.flush()

        logger.info(
            "Ledger transaction recorded",
            extra_data={
                "user_id": user_id,
                "transaction_id": transaction.id,
                "type": tx_type.value,
                "amount": str(money),
                "source": transaction.source,
            }
        )
        return transaction

    async def _totals_by_type(self, user_id: str) -> dict[TransactionType, Decimal]:
        result = await self.db.execute(
            select(RewardTransaction.type, func.sum(RewardTransaction.amount))
            .where(
                RewardTransaction.user_id == user_id,
                RewardTransaction.status == TransactionStatus.COMPLETED,
            )
            .group_by(RewardTransaction.type)
        )
        return {
            tx_type: to_money(total or 0)
            for tx_type, total in result.all()
        }

    async def compute_balance(self, user_id: str) -> Decimal:
        """Σ(REWARD, BONUS) − Σ(PENALTY, DEDUCTION) over COMPLETED rows"""
        totals = await self._totals_by_type(user_id)
        credits = sum((totals.get(t, ZERO) for t in CREDIT_TYPES), ZERO)
        debits = sum((totals.get(t, ZERO) for t in DEBIT_TYPES), ZERO)
        return credits - debits

    async def _debt_repayment_credits(self, user_id: str) -> Decimal:
        """REWARD credits that balance debt payments; not earnings"""
        total = await self.db.scalar(
            select(func.sum(RewardTransaction.amount)).where(
                RewardTransaction.user_id == user_id,
                RewardTransaction.status == TransactionStatus.COMPLETED,
                RewardTransaction.type == TransactionType.REWARD,
                RewardTransaction.source == TransactionSource.DEBT_PAYMENT.value,
            )
        )
        return to_money(total or 0)

    async def get_balance_summary(self, user_id: str) -> BalanceSummary:
        totals = await self._totals_by_type(user_id)
        credits = sum((totals.get(t, ZERO) for t in CREDIT_TYPES), ZERO)
        penalties = sum((totals.get(t, ZERO) for t in DEBIT_TYPES), ZERO)
        return BalanceSummary(
            user_id=user_id,
            total_earned=credits - await self._debt_repayment_credits(user_id),
            total_penalties=penalties,
            total_debt_payments=totals.get(TransactionType.DEBT_PAYMENT, ZERO),
            balance=credits - penalties,
        )

    async def get_transaction_history(
        self, user_id: str, limit: int = 20
    ) -> List[RewardTransaction]:
        result = await self.db.execute(
            select(RewardTransaction)
            .where(RewardTransaction.user_id == user_id)
            .order_by(RewardTransaction.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def record_report_outcome(
        self,
        user_id: str,
        report_id: str,
        approved: bool,
        amount,
    ) -> RewardTransaction:
        """
        Single write path for a reviewed citizen report.

        Approved reports earn a REWARD, rejected ones cost a PENALTY. A report
        is booked at most once; repeating the call returns the existing row.
        """
        result = await self.db.execute(
            select(RewardTransaction).where(
                RewardTransaction.user_id == user_id,
                RewardTransaction.source == TransactionSource.CITIZEN_REPORT.value,
                RewardTransaction.related_entity_id == report_id,
            )
        )
        existing = result.scalars().first()
        if existing:
            logger.info(
                "Report outcome already recorded",
                extra_data={"user_id": user_id, "report_id": report_id, "transaction_id": existing.id}
            )
            return existing

        tx_type = TransactionType.REWARD if approved else TransactionType.PENALTY
        verdict = "approved" if approved else "rejected"
        return await self.record_transaction(
            user_id,
            amount,
            tx_type,
            TransactionSource.CITIZEN_REPORT,
            related_entity_id=report_id,
            description=f"Report {report_id} {verdict}",
        )
