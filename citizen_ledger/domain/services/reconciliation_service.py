"""
Payment Reconciliation Service

Opens gateway payment sessions for debts and fines and settles the gateway's
callbacks exactly once:

1. The callback is verified with the gateway before anything is trusted.
2. The tran_id prefix routes it to the debt or the fine flow.
3. Idempotency claim, settlement, audit log and outbox notification commit
   together or not at all.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from citizen_ledger.core.exceptions import (
    DebtAlreadySettledError,
    DebtNotFoundError,
    ExternalServiceException,
    FineAlreadyPaidError,
    FineNotFoundError,
    GatewayError,
    PaymentNotFoundError,
    ValidationError,
)
from citizen_ledger.core.logging import get_logger
from citizen_ledger.db.models.fine import Fine, FineStatus
from citizen_ledger.db.models.gateway_callback_event import GatewayCallbackEvent
from citizen_ledger.db.models.outstanding_debt import SETTLED_DEBT_STATUSES
from citizen_ledger.db.models.payment import Payment, PaymentStatus
from citizen_ledger.db.models.transaction_log import ReferenceType, TransactionLog
from citizen_ledger.domain.services.debt_service import DebtManagementService
from citizen_ledger.domain.services.gateway.base_client import (
    CustomerInfo,
    GatewayCallback,
    GatewayValidation,
    PaymentGatewayClient,
    PaymentSessionRequest,
)
from citizen_ledger.domain.services.ledger_service import ZERO, to_money
from citizen_ledger.domain.services.outbox_service import OutboxService
from citizen_ledger.domain.services.payment_references import (
    FINE_PREFIX,
    MULTI_FINE_PREFIX,
    PaymentReference,
    ReferenceKind,
    classify_reference,
    encode_debt_reference,
    generate_transaction_id,
)

logger = get_logger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")
SUCCESS_STATUSES = {"VALID", "VALIDATED"}


class SettlementOutcome(str, Enum):
    SETTLED = "SETTLED"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"  # this callback was handled before
    ALREADY_SETTLED = "ALREADY_SETTLED"  # the obligation was settled by other means
    MARKED_FAILED = "MARKED_FAILED"
    CANCELLED = "CANCELLED"
    IGNORED = "IGNORED"  # nothing stored for this tran_id


@dataclass
class SettlementResult:
    outcome: SettlementOutcome
    transaction_id: str
    kind: Optional[ReferenceKind] = None
    amount: Optional[Decimal] = None
    debt_id: Optional[str] = None
    fine_ids: List[str] = field(default_factory=list)
    # captured money recorded but not applied; kept for manual reconciliation
    unapplied: bool = False


@dataclass
class PaymentSession:
    gateway_url: str
    transaction_id: str
    amount: Decimal
    session_key: Optional[str] = None
    payment_ids: List[str] = field(default_factory=list)


def _as_callback(payload: GatewayCallback | dict[str, Any]) -> GatewayCallback:
    if isinstance(payload, GatewayCallback):
        return payload
    return GatewayCallback.model_validate(payload)


class PaymentReconciliationService:
    def __init__(self, db: AsyncSession, gateway: PaymentGatewayClient):
        self.db = db
        self.gateway = gateway
        self.debt_service = DebtManagementService(db)
        self.outbox_service = OutboxService(db)

    # ==================== Gateway calls ====================

    async def _open_session(self, request: PaymentSessionRequest):
        try:
            return await self.gateway.init_session(request)
        except GatewayError:
            raise
        except ExternalServiceException as exc:
            # open circuit and similar collaborator failures count as a refused session
            raise GatewayError(exc.message, details={"tran_id": request.transaction_id}) from exc

    async def _verify(self, callback: GatewayCallback) -> GatewayValidation:
        if not callback.val_id:
            raise GatewayError("callback carries no val_id", details={"tran_id": callback.tran_id})
        try:
            validation = await self.gateway.verify(callback.val_id)
        except GatewayError:
            raise
        except ExternalServiceException as exc:
            raise GatewayError(exc.message, details={"tran_id": callback.tran_id}) from exc

        if not validation.valid:
            raise GatewayError(
                "payment could not be validated",
                details={"tran_id": callback.tran_id, "gateway_status": validation.raw.get("status")},
            )
        if validation.tran_id and validation.tran_id != callback.tran_id:
            raise GatewayError(
                "validated transaction does not match callback",
                details={"tran_id": callback.tran_id, "validated_tran_id": validation.tran_id},
            )
        return validation

    @staticmethod
    def _verified_amount(callback: GatewayCallback, validation: GatewayValidation) -> Decimal:
        claimed = to_money(callback.amount) if callback.amount not in (None, "") else None
        verified = to_money(validation.amount) if validation.amount is not None else None
        if verified is None and claimed is None:
            raise GatewayError("payment amount missing", details={"tran_id": callback.tran_id})
        if verified is not None and claimed is not None and abs(verified - claimed) > AMOUNT_TOLERANCE:
            raise GatewayError(
                "validated amount does not match callback",
                details={"tran_id": callback.tran_id, "claimed": str(claimed), "validated": str(verified)},
            )
        amount = verified if verified is not None else claimed
        if amount <= 0:
            raise GatewayError("payment amount must be positive", details={"tran_id": callback.tran_id})
        return amount

    # ==================== Sessions ====================

    async def create_debt_payment_session(
        self,
        debt_id: str,
        user_id: str,
        amount=None,
        customer: Optional[CustomerInfo] = None,
    ) -> PaymentSession:
        """
        Open a gateway session for (part of) a debt.

        Nothing is written locally; the debt id travels inside the tran_id.
        """
        debt = await self.debt_service.get_debt(debt_id)
        if not debt or debt.user_id != user_id:
            raise DebtNotFoundError(debt_id)
        if debt.status in SETTLED_DEBT_STATUSES:
            raise DebtAlreadySettledError(debt.id, debt.status.value)

        remaining = debt.remaining_amount
        money = remaining if amount is None else to_money(amount)
        if money <= 0:
            raise ValidationError("Payment amount must be positive", field="amount")
        if money > remaining:
            raise ValidationError(
                "Payment amount exceeds the remaining debt",
                field="amount",
                details={"amount": str(money), "remaining": str(remaining)},
            )

        transaction_id = encode_debt_reference(debt.id)
        session = await self._open_session(
            PaymentSessionRequest(
                transaction_id=transaction_id,
                amount=money,
                product_name="Outstanding Debt Payment",
                product_category="Debt",
                customer=customer or CustomerInfo(),
            )
        )
        logger.info(
            "Debt payment session opened",
            extra_data={"debt_id": debt.id, "user_id": user_id, "tran_id": transaction_id, "amount": str(money)}
        )
        return PaymentSession(
            gateway_url=session.url,
            transaction_id=transaction_id,
            amount=money,
            session_key=session.session_key,
        )

    async def _open_fine_session(
        self,
        payments: List[Payment],
        transaction_id: str,
        total: Decimal,
        product_name: str,
        customer: Optional[CustomerInfo],
    ) -> PaymentSession:
        """Commit PENDING rows, then call the gateway; delete them again if it fails"""
        self.db.add_all(payments)
        await self.db.commit()

        try:
            session = await self._open_session(
                PaymentSessionRequest(
                    transaction_id=transaction_id,
                    amount=total,
                    product_name=product_name,
                    product_category="Fine",
                    customer=customer or CustomerInfo(),
                )
            )
        except Exception:
            await self.db.rollback()
            await self.db.execute(
                delete(Payment).where(
                    Payment.transaction_id == transaction_id,
                    Payment.payment_status == PaymentStatus.PENDING,
                )
            )
            await self.db.commit()
            logger.warning(
                "Gateway session failed, pending payments removed",
                extra_data={"tran_id": transaction_id, "payment_count": len(payments)}
            )
            raise

        return PaymentSession(
            gateway_url=session.url,
            transaction_id=transaction_id,
            amount=total,
            session_key=session.session_key,
            payment_ids=[p.id for p in payments],
        )

    async def create_fine_payment_session(
        self,
        fine_id: str,
        user_id: str,
        amount=None,
        customer: Optional[CustomerInfo] = None,
    ) -> PaymentSession:
        fine = (await self.db.execute(select(Fine).where(Fine.id == fine_id))).scalar_one_or_none()
        if not fine or fine.user_id != user_id:
            raise FineNotFoundError(fine_id)
        if fine.status == FineStatus.PAID:
            raise FineAlreadyPaidError(fine_id)

        money = to_money(fine.amount if amount is None else amount)
        if money <= 0:
            raise ValidationError("Payment amount must be positive", field="amount")

        transaction_id = generate_transaction_id(FINE_PREFIX)
        payment = Payment(
            user_id=user_id,
            fine_id=fine.id,
            amount=money,
            payment_status=PaymentStatus.PENDING,
            transaction_id=transaction_id,
        )
        return await self._open_fine_session(
            [payment], transaction_id, money, f"Fine Payment - {fine.id}", customer
        )

    async def create_multiple_fines_payment_session(
        self,
        fine_ids: List[str],
        user_id: str,
        customer: Optional[CustomerInfo] = None,
    ) -> PaymentSession:
        """One gateway session for every unpaid fine among ``fine_ids``"""
        result = await self.db.execute(
            select(Fine).where(
                Fine.id.in_(fine_ids),
                Fine.user_id == user_id,
                Fine.status == FineStatus.UNPAID,
            ).order_by(Fine.issued_at)
        )
        fines = list(result.scalars().all())
        if not fines:
            raise FineNotFoundError(", ".join(fine_ids))

        transaction_id = generate_transaction_id(MULTI_FINE_PREFIX)
        payments = [
            Payment(
                user_id=user_id,
                fine_id=fine.id,
                amount=to_money(fine.amount),
                payment_status=PaymentStatus.PENDING,
                transaction_id=transaction_id,
            )
            for fine in fines
        ]
        total = sum((p.amount for p in payments), ZERO)
        return await self._open_fine_session(
            payments, transaction_id, total, f"Fine Payment - {len(fines)} fine(s)", customer
        )

    # ==================== Callbacks ====================

    async def _claim_callback(self, kind: str, transaction_id: str) -> bool:
        """Insert the idempotency row; False when this callback was already settled"""
        try:
            async with self.db.begin_nested():
                self.db.add(GatewayCallbackEvent(
                    event_key=GatewayCallbackEvent.make_key(kind, transaction_id),
                    kind=kind,
                    status="completed",
                ))
        except IntegrityError:
            return False
        return True

    async def handle_success_callback(
        self, payload: GatewayCallback | dict[str, Any]
    ) -> SettlementResult:
        """
        Settle a verified successful payment.

        Raises:
            InvalidReferenceError: malformed DEBT_ tran_id
            GatewayError: verification failed or contradicts the payload
            DebtNotFoundError / PaymentNotFoundError: nothing to settle
        """
        callback = _as_callback(payload)
        reference = classify_reference(callback.tran_id)
        validation = await self._verify(callback)
        amount = self._verified_amount(callback, validation)

        try:
            if not await self._claim_callback("success", callback.tran_id):
                await self.db.rollback()
                logger.info(
                    "Duplicate success callback ignored",
                    extra_data={"tran_id": callback.tran_id}
                )
                return SettlementResult(
                    outcome=SettlementOutcome.ALREADY_PROCESSED,
                    transaction_id=callback.tran_id,
                    kind=reference.kind,
                    amount=amount,
                    debt_id=reference.debt_id,
                )

            if reference.kind == ReferenceKind.DEBT:
                result = await self._settle_debt(reference, amount, callback, validation)
            else:
                result = await self._settle_fines(reference, amount, callback, validation)

            if result.outcome == SettlementOutcome.SETTLED or result.unapplied:
                await self.db.commit()
            else:
                await self.db.rollback()
        except Exception as exc:
            await self.db.rollback()
            logger.error(
                "Payment settlement failed, rolled back",
                extra_data={
                    "tran_id": callback.tran_id,
                    "kind": reference.kind.value,
                    "debt_id": reference.debt_id,
                    "amount": str(amount),
                    "val_id": callback.val_id,
                    "error": str(exc),
                },
                exc_info=True
            )
            raise

        logger.info(
            "Payment callback settled",
            extra_data={
                "tran_id": callback.tran_id,
                "outcome": result.outcome.value,
                "kind": reference.kind.value,
                "debt_id": result.debt_id,
                "fine_ids": result.fine_ids,
                "amount": str(amount),
            }
        )
        return result

    async def _settle_debt(
        self,
        reference: PaymentReference,
        amount: Decimal,
        callback: GatewayCallback,
        validation: GatewayValidation,
    ) -> SettlementResult:
        try:
            debt = await self.debt_service.record_payment(
                reference.debt_id, amount, callback.tran_id, commit=False
            )
        except DebtAlreadySettledError as exc:
            bank_tran_id = callback.bank_tran_id or validation.bank_tran_id
            logger.warning(
                "Verified payment for a settled debt left unapplied",
                extra_data={
                    "debt_id": reference.debt_id,
                    "debt_status": exc.details.get("status"),
                    "tran_id": callback.tran_id,
                    "amount": str(amount),
                    "val_id": callback.val_id,
                    "bank_tran_id": bank_tran_id,
                }
            )
            self.db.add(TransactionLog(
                reference_id=reference.debt_id,
                reference_type=ReferenceType.DEBT,
                amount=amount,
                transaction_id=callback.tran_id,
                provider=self.gateway.provider_name,
                status="UNAPPLIED",
                meta={
                    "val_id": callback.val_id,
                    "bank_tran_id": bank_tran_id,
                    "debt_status": exc.details.get("status"),
                },
            ))
            await self.db.flush()
            return SettlementResult(
                outcome=SettlementOutcome.ALREADY_SETTLED,
                transaction_id=callback.tran_id,
                kind=ReferenceKind.DEBT,
                amount=amount,
                debt_id=reference.debt_id,
                unapplied=True,
            )

        self.db.add(TransactionLog(
            reference_id=debt.id,
            reference_type=ReferenceType.DEBT,
            amount=amount,
            transaction_id=callback.tran_id,
            provider=self.gateway.provider_name,
            status="SUCCESS",
            meta={
                "val_id": callback.val_id,
                "bank_tran_id": callback.bank_tran_id or validation.bank_tran_id,
                "debt_status": debt.status.value,
            },
        ))
        await self.outbox_service.queue_debt_payment(debt, amount, callback.tran_id)
        await self.db.flush()

        return SettlementResult(
            outcome=SettlementOutcome.SETTLED,
            transaction_id=callback.tran_id,
            kind=ReferenceKind.DEBT,
            amount=amount,
            debt_id=debt.id,
        )

    async def _settle_fines(
        self,
        reference: PaymentReference,
        amount: Decimal,
        callback: GatewayCallback,
        validation: GatewayValidation,
    ) -> SettlementResult:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.transaction_id == reference.transaction_id)
            .order_by(Payment.created_at)
            .with_for_update()
        )
        payments = list(result.scalars().all())
        if not payments:
            raise PaymentNotFoundError(reference.transaction_id)

        # A verified payment also settles rows an earlier fail callback marked FAILED
        open_payments = [p for p in payments if p.payment_status != PaymentStatus.COMPLETED]
        fine_ids = [p.fine_id for p in payments if p.fine_id]
        if not open_payments:
            return SettlementResult(
                outcome=SettlementOutcome.ALREADY_SETTLED,
                transaction_id=reference.transaction_id,
                kind=ReferenceKind.FINE,
                amount=amount,
                fine_ids=fine_ids,
            )

        expected = sum((to_money(p.amount) for p in open_payments), ZERO)
        if amount + AMOUNT_TOLERANCE < expected:
            raise GatewayError(
                "validated amount is less than the session total",
                details={"tran_id": reference.transaction_id, "expected": str(expected), "validated": str(amount)},
            )

        now = datetime.utcnow()
        bank_tran_id = callback.bank_tran_id or validation.bank_tran_id
        for payment in open_payments:
            payment.payment_status = PaymentStatus.COMPLETED
            payment.paid_at = now
            payment.bank_transaction_id = bank_tran_id

            if payment.fine_id:
                fine = (await self.db.execute(
                    select(Fine).where(Fine.id == payment.fine_id).with_for_update()
                )).scalar_one_or_none()
                if fine and fine.status != FineStatus.PAID:
                    fine.status = FineStatus.PAID
                    fine.paid_at = now

            self.db.add(TransactionLog(
                reference_id=payment.fine_id or payment.id,
                reference_type=ReferenceType.FINE,
                amount=payment.amount,
                transaction_id=reference.transaction_id,
                provider=self.gateway.provider_name,
                status="SUCCESS",
                meta={"val_id": callback.val_id, "bank_tran_id": bank_tran_id, "payment_id": payment.id},
            ))

        settled_fine_ids = [p.fine_id for p in open_payments if p.fine_id]
        await self.outbox_service.queue_fine_payment(
            open_payments[0].user_id, settled_fine_ids, amount, reference.transaction_id
        )
        await self.db.flush()

        return SettlementResult(
            outcome=SettlementOutcome.SETTLED,
            transaction_id=reference.transaction_id,
            kind=ReferenceKind.FINE,
            amount=amount,
            fine_ids=settled_fine_ids,
        )

    async def _pending_payments(self, transaction_id: str) -> List[Payment]:
        result = await self.db.execute(
            select(Payment)
            .where(
                Payment.transaction_id == transaction_id,
                Payment.payment_status == PaymentStatus.PENDING,
            )
            .with_for_update()
        )
        return list(result.scalars().all())

    async def handle_fail_callback(self, payload: GatewayCallback | dict[str, Any]) -> SettlementResult:
        """PENDING payments of the session become FAILED; unknown sessions are ignored"""
        callback = _as_callback(payload)
        payments = await self._pending_payments(callback.tran_id)
        if not payments:
            await self.db.rollback()
            return SettlementResult(outcome=SettlementOutcome.IGNORED, transaction_id=callback.tran_id)

        for payment in payments:
            payment.payment_status = PaymentStatus.FAILED
        await self.db.commit()

        logger.info(
            "Payment marked failed",
            extra_data={"tran_id": callback.tran_id, "payment_ids": [p.id for p in payments]}
        )
        return SettlementResult(
            outcome=SettlementOutcome.MARKED_FAILED,
            transaction_id=callback.tran_id,
            kind=ReferenceKind.FINE,
            fine_ids=[p.fine_id for p in payments if p.fine_id],
        )

    async def handle_cancel_callback(self, payload: GatewayCallback | dict[str, Any]) -> SettlementResult:
        """PENDING payments of a cancelled session are deleted"""
        callback = _as_callback(payload)
        payments = await self._pending_payments(callback.tran_id)
        if not payments:
            await self.db.rollback()
            return SettlementResult(outcome=SettlementOutcome.IGNORED, transaction_id=callback.tran_id)

        fine_ids = [p.fine_id for p in payments if p.fine_id]
        for payment in payments:
            await self.db.delete(payment)
        await self.db.commit()

        logger.info(
            "Cancelled payment removed",
            extra_data={"tran_id": callback.tran_id, "fine_ids": fine_ids}
        )
        return SettlementResult(
            outcome=SettlementOutcome.CANCELLED,
            transaction_id=callback.tran_id,
            kind=ReferenceKind.FINE,
            fine_ids=fine_ids,
        )

    async def handle_ipn(self, payload: GatewayCallback | dict[str, Any]) -> SettlementResult:
        """Server-to-server notification: dispatch on the reported status"""
        callback = _as_callback(payload)
        status = (callback.status or "").upper()
        if status in SUCCESS_STATUSES:
            return await self.handle_success_callback(callback)
        if status in {"CANCELLED", "UNATTEMPTED", "EXPIRED"}:
            return await self.handle_cancel_callback(callback)
        return await self.handle_fail_callback(callback)
