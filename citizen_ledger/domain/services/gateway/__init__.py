"""
Payment gateway clients
"""
from __future__ import annotations

import threading

from citizen_ledger.core.circuit_breaker import get_gateway_circuit_breaker
from citizen_ledger.domain.services.gateway.base_client import (
    CustomerInfo,
    GatewayCallback,
    GatewaySession,
    GatewayValidation,
    PaymentGatewayClient,
    PaymentSessionRequest,
)

_client: PaymentGatewayClient | None = None
_lock = threading.Lock()


def get_payment_gateway() -> PaymentGatewayClient:
    """Process-wide gateway client (FastAPI dependency)"""
    global _client
    if _client is None:
        with _lock:
            if _client is None:
                from citizen_ledger.domain.services.gateway.sslcommerz_client import SSLCommerzClient

                _client = SSLCommerzClient(circuit_breaker=get_gateway_circuit_breaker())
    return _client


def reset_payment_gateway() -> None:
    global _client
    with _lock:
        _client = None


__all__ = [
    "CustomerInfo",
    "GatewayCallback",
    "GatewaySession",
    "GatewayValidation",
    "PaymentGatewayClient",
    "PaymentSessionRequest",
    "get_payment_gateway",
    "reset_payment_gateway",
]
