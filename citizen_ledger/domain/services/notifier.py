"""
Notifier - delivers settlement/debt notifications to the notification service.

Called only by the outbox worker, after the financial transaction committed.
``notify`` raises on failure so the worker can schedule a retry; nothing in
the ledger waits on it.
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from citizen_ledger.core.circuit_breaker import CircuitBreaker, get_notifier_circuit_breaker
from citizen_ledger.core.config import settings
from citizen_ledger.core.exceptions import NotifierError, ServiceTimeoutError
from citizen_ledger.core.logging import get_correlation_id, get_logger

logger = get_logger(__name__)


class NotifierService(ABC):
    @abstractmethod
    async def notify(self, user_id: str, template_kind: str, payload: dict) -> None:
        """Deliver one notification; raises NotifierError or ServiceTimeoutError on failure"""


class LoggingNotifier(NotifierService):
    """Used when no notification endpoint is configured"""

    async def notify(self, user_id: str, template_kind: str, payload: dict) -> None:
        logger.info(
            "Notification (no notifier configured)",
            extra_data={"user_id": user_id, "template_kind": template_kind, "payload": payload}
        )


class WebhookNotifier(NotifierService):
    """POSTs ``{user_id, template, payload}`` as JSON to ``NOTIFIER_URL``"""

    def __init__(
        self,
        url: str,
        circuit_breaker: CircuitBreaker,
        *,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = url
        self._circuit_breaker = circuit_breaker
        self._timeout = timeout_seconds or settings.NOTIFIER_TIMEOUT_SECONDS
        self._transport = transport

    async def _post(self, body: dict) -> None:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    self._url,
                    json=body,
                    headers={"X-Correlation-ID": get_correlation_id()},
                )
        except httpx.TimeoutException:
            raise ServiceTimeoutError("notifier", self._timeout)
        except httpx.RequestError as exc:
            raise NotifierError(f"network error: {exc}", details={"network_error": True})

        if response.status_code >= 400:
            raise NotifierError(
                f"notification endpoint returned status {response.status_code}",
                details={"status_code": response.status_code, "response_text": response.text[:500]},
            )

    async def notify(self, user_id: str, template_kind: str, payload: dict) -> None:
        body = {"user_id": user_id, "template": template_kind, "payload": payload}
        await self._circuit_breaker.execute(self._post, body)


_notifier: NotifierService | None = None
_lock = threading.Lock()


def get_notifier() -> NotifierService:
    global _notifier
    if _notifier is None:
        with _lock:
            if _notifier is None:
                if settings.NOTIFIER_URL:
                    _notifier = WebhookNotifier(settings.NOTIFIER_URL, get_notifier_circuit_breaker())
                else:
                    _notifier = LoggingNotifier()
    return _notifier


def reset_notifier() -> None:
    global _notifier
    with _lock:
        _notifier = None
