"""
Payment Gateway Callback Handler

Thin HTTP layer over PaymentReconciliationService. The gateway redirects the
citizen's browser here (success/fail/cancel) and also posts IPNs; every
endpoint answers with a 303 to the frontend result page. Internal error
detail never reaches the browser.
"""
from typing import Any
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from citizen_ledger.core.config import settings
from citizen_ledger.core.exceptions import AppException
from citizen_ledger.core.logging import get_logger
from citizen_ledger.db.database import get_db
from citizen_ledger.domain.services.gateway import (
    GatewayCallback,
    PaymentGatewayClient,
    get_payment_gateway,
)
from citizen_ledger.domain.services.reconciliation_service import (
    PaymentReconciliationService,
    SettlementOutcome,
)

logger = get_logger(__name__)

router = APIRouter()

STATUS_SUCCESS = "success"
STATUS_ALREADY_PAID = "already_paid"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"


def _result_redirect(status: str, tran_id: str | None) -> RedirectResponse:
    query = {"status": status}
    if tran_id:
        query["tran_id"] = tran_id
    return RedirectResponse(
        url=f"{settings.PAYMENT_RESULT_URL}?{urlencode(query)}",
        status_code=303,
    )


async def _read_payload(request: Request) -> dict[str, Any]:
    """Gateways post form data; JSON and query strings are accepted as well"""
    payload: dict[str, Any] = dict(request.query_params)
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        body = await request.json()
        if isinstance(body, dict):
            payload.update(body)
    elif request.method == "POST":
        form = await request.form()
        payload.update({key: value for key, value in form.items() if isinstance(value, str)})
    return payload


async def _parse_callback(request: Request) -> GatewayCallback | None:
    payload = await _read_payload(request)
    try:
        return GatewayCallback.model_validate(payload)
    except PydanticValidationError:
        logger.warning(
            "Gateway callback without tran_id",
            extra_data={"path": request.url.path, "fields": sorted(payload)}
        )
        return None


def get_reconciliation_service(
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGatewayClient = Depends(get_payment_gateway),
) -> PaymentReconciliationService:
    return PaymentReconciliationService(db, gateway)


@router.api_route("/success", methods=["GET", "POST"])
async def payment_success(
    request: Request,
    service: PaymentReconciliationService = Depends(get_reconciliation_service),
) -> RedirectResponse:
    callback = await _parse_callback(request)
    if callback is None:
        return _result_redirect(STATUS_FAILED, None)

    try:
        result = await service.handle_success_callback(callback)
    except AppException as exc:
        # full context is logged by the service; the browser only learns it failed
        logger.warning(
            "Payment success callback rejected",
            extra_data={"tran_id": callback.tran_id, "error_code": exc.error_code.value}
        )
        return _result_redirect(STATUS_FAILED, callback.tran_id)
    except Exception as exc:
        logger.error(
            "Payment success callback crashed",
            extra_data={"tran_id": callback.tran_id, "error": str(exc)},
            exc_info=True
        )
        return _result_redirect(STATUS_FAILED, callback.tran_id)

    if result.outcome == SettlementOutcome.SETTLED:
        return _result_redirect(STATUS_SUCCESS, callback.tran_id)
    return _result_redirect(STATUS_ALREADY_PAID, callback.tran_id)


@router.api_route("/fail", methods=["GET", "POST"])
async def payment_fail(
    request: Request,
    service: PaymentReconciliationService = Depends(get_reconciliation_service),
) -> RedirectResponse:
    callback = await _parse_callback(request)
    if callback is not None:
        await service.handle_fail_callback(callback)
    return _result_redirect(STATUS_FAILED, callback.tran_id if callback else None)


@router.api_route("/cancel", methods=["GET", "POST"])
async def payment_cancel(
    request: Request,
    service: PaymentReconciliationService = Depends(get_reconciliation_service),
) -> RedirectResponse:
    callback = await _parse_callback(request)
    if callback is not None:
        await service.handle_cancel_callback(callback)
    return _result_redirect(STATUS_CANCELLED, callback.tran_id if callback else None)


@router.post("/ipn")
async def payment_ipn(
    request: Request,
    service: PaymentReconciliationService = Depends(get_reconciliation_service),
) -> dict:
    """Server-to-server notification; the gateway retries until it gets a 200"""
    callback = await _parse_callback(request)
    if callback is None:
        return {"status": "ignored"}

    try:
        result = await service.handle_ipn(callback)
    except AppException as exc:
        logger.warning(
            "IPN rejected",
            extra_data={"tran_id": callback.tran_id, "error_code": exc.error_code.value}
        )
        return {"status": "rejected", "tran_id": callback.tran_id}

    return {"status": result.outcome.value.lower(), "tran_id": callback.tran_id}
