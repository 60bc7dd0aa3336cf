"""
Tests for the notification client used by the outbox worker
"""
import json

import httpx
import pytest

from citizen_ledger.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from citizen_ledger.core.exceptions import (
    CircuitBreakerOpenError,
    ErrorCode,
    NotifierError,
    ServiceTimeoutError,
)
from citizen_ledger.core.logging import set_correlation_id
from citizen_ledger.domain.services.notifier import WebhookNotifier


def _notifier(handler, *, failure_threshold: int = 5) -> WebhookNotifier:
    breaker = CircuitBreaker(
        "notifier-test", CircuitBreakerConfig(failure_threshold=failure_threshold)
    )
    return WebhookNotifier(
        "https://notify.example.test/hooks/ledger",
        breaker,
        transport=httpx.MockTransport(handler),
    )


class TestWebhookNotifier:
    @pytest.mark.unit
    async def test_posts_json_body_with_correlation_id(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = json.loads(request.content)
            captured["cid"] = request.headers["X-Correlation-ID"]
            return httpx.Response(202)

        set_correlation_id("outbox01")
        await _notifier(handler).notify("citizen-1", "debt_created", {"debt_id": "debt-1"})

        assert captured["body"] == {
            "user_id": "citizen-1",
            "template": "debt_created",
            "payload": {"debt_id": "debt-1"},
        }
        assert captured["cid"] == "outbox01"

    @pytest.mark.unit
    async def test_error_status_raises(self):
        notifier = _notifier(lambda request: httpx.Response(503, text="down"))

        with pytest.raises(NotifierError) as exc_info:
            await notifier.notify("citizen-1", "debt_waived", {})

        assert exc_info.value.details["status_code"] == 503

    @pytest.mark.unit
    async def test_network_error_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(NotifierError):
            await _notifier(handler).notify("citizen-1", "debt_waived", {})

    @pytest.mark.unit
    async def test_timeout_raises_service_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(ServiceTimeoutError) as exc_info:
            await _notifier(handler).notify("citizen-1", "debt_created", {})

        assert exc_info.value.error_code == ErrorCode.EXTERNAL_SERVICE_TIMEOUT
        assert exc_info.value.details["service"] == "notifier"
        assert exc_info.value.details["timeout_seconds"] > 0

    @pytest.mark.unit
    async def test_circuit_opens_after_repeated_failures(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500)

        notifier = _notifier(handler, failure_threshold=2)
        for _ in range(2):
            with pytest.raises(NotifierError):
                await notifier.notify("citizen-1", "debt_created", {})

        with pytest.raises(CircuitBreakerOpenError):
            await notifier.notify("citizen-1", "debt_created", {})
        assert len(calls) == 2
