"""
SSLCommerz-compatible gateway client (httpx + circuit breaker).

- POST {base}/gwprocess/v4/api.php opens a session
- GET {base}/validator/api/validationserverAPI.php verifies a val_id
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx

from citizen_ledger.core.circuit_breaker import CircuitBreaker
from citizen_ledger.core.config import settings
from citizen_ledger.core.exceptions import GatewayError, ServiceTimeoutError
from citizen_ledger.core.logging import get_logger
from citizen_ledger.domain.services.gateway.base_client import (
    GatewaySession,
    GatewayValidation,
    PaymentGatewayClient,
    PaymentSessionRequest,
)

logger = get_logger(__name__)

INIT_PATH = "/gwprocess/v4/api.php"
VALIDATION_PATH = "/validator/api/validationserverAPI.php"
CALLBACK_PATH = "/api/payments/gateway"
VALID_STATUSES = {"VALID", "VALIDATED"}


def _parse_amount(value) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


class SSLCommerzClient(PaymentGatewayClient):
    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        *,
        base_url: Optional[str] = None,
        store_id: Optional[str] = None,
        store_password: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._circuit_breaker = circuit_breaker
        self._base_url = base_url or settings.GATEWAY_BASE_URL
        self._store_id = store_id if store_id is not None else settings.GATEWAY_STORE_ID
        self._store_password = (
            store_password if store_password is not None else settings.GATEWAY_STORE_PASSWORD
        )
        self._timeout = timeout_seconds or settings.GATEWAY_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def provider_name(self) -> str:
        return "SSLCOMMERZ"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url, timeout=self._timeout, transport=self._transport
        )

    def _session_form(self, request: PaymentSessionRequest) -> dict[str, str]:
        callback_base = f"{settings.PAYMENT_CALLBACK_BASE_URL}{CALLBACK_PATH}"
        customer = request.customer
        return {
            "store_id": self._store_id,
            "store_passwd": self._store_password,
            "total_amount": str(request.amount),
            "currency": settings.PAYMENT_CURRENCY,
            "tran_id": request.transaction_id,
            "success_url": f"{callback_base}/success",
            "fail_url": f"{callback_base}/fail",
            "cancel_url": f"{callback_base}/cancel",
            "ipn_url": f"{callback_base}/ipn",
            "cus_name": customer.name,
            "cus_email": customer.email,
            "cus_add1": customer.address,
            "cus_city": customer.city,
            "cus_postcode": customer.postcode,
            "cus_country": customer.country,
            "cus_phone": customer.phone,
            "shipping_method": "NO",
            "product_name": request.product_name,
            "product_category": request.product_category,
            "product_profile": "general",
        }

    async def _request(self, operation: str, method: str, path: str, **kwargs) -> dict:
        async def _call() -> dict:
            try:
                async with self._client() as client:
                    response = await client.request(method, path, **kwargs)
            except httpx.TimeoutException:
                exc = ServiceTimeoutError("payment_gateway", self._timeout)
                exc.details["operation"] = operation
                raise exc
            except httpx.RequestError as exc:
                raise GatewayError(
                    f"{operation} network error: {exc}",
                    details={"operation": operation, "network_error": True},
                )

            if response.status_code != 200:
                raise GatewayError.from_response(operation, response)
            try:
                return response.json()
            except ValueError:
                raise GatewayError.from_response(
                    operation, response, message=f"{operation} returned a non-JSON body"
                )

        return await self._circuit_breaker.execute(_call)

    async def init_session(self, request: PaymentSessionRequest) -> GatewaySession:
        data = await self._request(
            "init_session", "POST", INIT_PATH, data=self._session_form(request)
        )
        if data.get("status") != "SUCCESS" or not data.get("GatewayPageURL"):
            reason = data.get("failedreason") or "Payment initialization failed"
            logger.warning(
                "Gateway refused payment session",
                extra_data={"tran_id": request.transaction_id, "reason": reason}
            )
            raise GatewayError(reason, details={"tran_id": request.transaction_id})

        return GatewaySession(url=data["GatewayPageURL"], session_key=data.get("sessionkey"))

    async def verify(self, val_id: str) -> GatewayValidation:
        data = await self._request(
            "verify",
            "GET",
            VALIDATION_PATH,
            params={
                "val_id": val_id,
                "store_id": self._store_id,
                "store_passwd": self._store_password,
                "format": "json",
            },
        )
        return GatewayValidation(
            valid=data.get("status") in VALID_STATUSES,
            tran_id=data.get("tran_id"),
            amount=_parse_amount(data.get("amount")),
            bank_tran_id=data.get("bank_tran_id"),
            raw=data,
        )
