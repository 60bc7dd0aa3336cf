"""
Tests for SSLCommerzClient - HTTP is served by httpx.MockTransport
"""
from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest

from citizen_ledger.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from citizen_ledger.core.exceptions import (
    CircuitBreakerOpenError,
    GatewayError,
    ServiceTimeoutError,
)
from citizen_ledger.domain.services.gateway import PaymentSessionRequest, get_payment_gateway
from citizen_ledger.domain.services.gateway.sslcommerz_client import (
    INIT_PATH,
    VALIDATION_PATH,
    SSLCommerzClient,
)


def _client(handler, breaker: CircuitBreaker | None = None) -> SSLCommerzClient:
    return SSLCommerzClient(
        breaker or CircuitBreaker("gateway-test", CircuitBreakerConfig(failure_threshold=2)),
        base_url="https://gateway.test",
        store_id="store-1",
        store_password="secret",
        timeout_seconds=5.0,
        transport=httpx.MockTransport(handler),
    )


def _session_request() -> PaymentSessionRequest:
    return PaymentSessionRequest(
        transaction_id="FINE_1699999999000_1",
        amount=Decimal("250.00"),
        product_name="Fine Payment",
        product_category="Fine",
    )


class TestInitSession:
    @pytest.mark.unit
    async def test_success_returns_gateway_url(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(
                200,
                json={
                    "status": "SUCCESS",
                    "GatewayPageURL": "https://gateway.test/pay/abc",
                    "sessionkey": "KEY-1",
                },
            )

        session = await _client(handler).init_session(_session_request())

        assert session.url == "https://gateway.test/pay/abc"
        assert session.session_key == "KEY-1"
        assert seen["path"] == INIT_PATH
        assert seen["form"]["tran_id"] == ["FINE_1699999999000_1"]
        assert seen["form"]["total_amount"] == ["250.00"]
        assert seen["form"]["store_id"] == ["store-1"]
        assert seen["form"]["success_url"][0].endswith("/api/payments/gateway/success")

    @pytest.mark.unit
    async def test_refused_session_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "FAILED", "failedreason": "Store is inactive"})

        with pytest.raises(GatewayError) as exc_info:
            await _client(handler).init_session(_session_request())
        assert "Store is inactive" in exc_info.value.message

    @pytest.mark.unit
    async def test_http_error_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="upstream exploded")

        with pytest.raises(GatewayError) as exc_info:
            await _client(handler).init_session(_session_request())
        assert exc_info.value.details["status_code"] == 500

    @pytest.mark.unit
    async def test_timeout_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(ServiceTimeoutError) as exc_info:
            await _client(handler).init_session(_session_request())
        assert exc_info.value.details["timeout_seconds"] == 5.0
        assert exc_info.value.details["service"] == "payment_gateway"
        assert exc_info.value.details["operation"] == "init_session"

    @pytest.mark.unit
    async def test_repeated_failures_open_the_circuit(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectError("refused", request=request)

        client = _client(handler)
        for _ in range(2):
            with pytest.raises(GatewayError):
                await client.init_session(_session_request())

        with pytest.raises(CircuitBreakerOpenError):
            await client.init_session(_session_request())
        assert len(calls) == 2


class TestVerify:
    @pytest.mark.unit
    async def test_valid_payment(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            return httpx.Response(
                200,
                json={
                    "status": "VALID",
                    "tran_id": "FINE_1699999999000_1",
                    "amount": "250.00",
                    "bank_tran_id": "BANK-9",
                },
            )

        validation = await _client(handler).verify("VAL-1")

        assert validation.valid is True
        assert validation.tran_id == "FINE_1699999999000_1"
        assert validation.amount == Decimal("250.00")
        assert validation.bank_tran_id == "BANK-9"
        assert seen["path"] == VALIDATION_PATH
        assert seen["params"]["val_id"] == "VAL-1"
        assert seen["params"]["format"] == "json"

    @pytest.mark.unit
    async def test_validated_status_counts_as_valid(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "VALIDATED", "tran_id": "T", "amount": "1"})

        assert (await _client(handler).verify("VAL-2")).valid is True

    @pytest.mark.unit
    async def test_invalid_payment(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "INVALID_TRANSACTION"})

        validation = await _client(handler).verify("VAL-3")

        assert validation.valid is False
        assert validation.amount is None

    @pytest.mark.unit
    async def test_non_json_body_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>maintenance</html>")

        with pytest.raises(GatewayError):
            await _client(handler).verify("VAL-4")


@pytest.mark.unit
def test_default_gateway_is_a_singleton():
    assert get_payment_gateway() is get_payment_gateway()
    assert get_payment_gateway().provider_name == "SSLCOMMERZ"
