"""
Payment gateway client interface.

Reconciliation code depends only on this interface; the concrete client
owns HTTP, credentials and the provider's field names.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


@dataclass
class CustomerInfo:
    name: str = "Citizen"
    email: str = "N/A"
    phone: str = "N/A"
    address: str = "N/A"
    city: str = "Dhaka"
    postcode: str = "1000"
    country: str = "Bangladesh"


@dataclass
class PaymentSessionRequest:
    transaction_id: str
    amount: Decimal
    product_name: str
    product_category: str
    customer: CustomerInfo = field(default_factory=CustomerInfo)


@dataclass
class GatewaySession:
    url: str
    session_key: Optional[str] = None


@dataclass
class GatewayValidation:
    valid: bool
    tran_id: Optional[str] = None
    amount: Optional[Decimal] = None
    bank_tran_id: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)


class GatewayCallback(BaseModel):
    """Fields the ledger reads from a gateway redirect/IPN payload"""

    model_config = ConfigDict(extra="allow")

    tran_id: str
    val_id: Optional[str] = None
    amount: Optional[str] = None
    bank_tran_id: Optional[str] = None
    status: Optional[str] = None


class PaymentGatewayClient(ABC):
    @abstractmethod
    async def init_session(self, request: PaymentSessionRequest) -> GatewaySession:
        """
        Open a hosted payment session.

        Raises:
            GatewayError: the gateway refused the session or was unreachable
            ServiceTimeoutError: the gateway did not answer in time
        """

    @abstractmethod
    async def verify(self, val_id: str) -> GatewayValidation:
        """
        Ask the gateway whether a validation id belongs to a genuine payment.

        Raises:
            GatewayError: the gateway could not be asked
            ServiceTimeoutError: the gateway did not answer in time
        """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider label stored in transaction logs."""
