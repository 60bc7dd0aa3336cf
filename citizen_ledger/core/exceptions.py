"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
Financial-integrity errors (ledger, debt, restriction) always propagate to the caller.
"""
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    CONFLICT = "ERR_1003"

    # Ledger errors (2xxx)
    INVALID_AMOUNT = "ERR_2001"
    INVALID_TRANSACTION_TYPE = "ERR_2002"

    # Debt errors (3xxx)
    DEBT_NOT_FOUND = "ERR_3001"
    DEBT_ALREADY_SETTLED = "ERR_3002"
    DUPLICATE_ACTIVE_DEBT = "ERR_3003"

    # Payment errors (4xxx)
    FINE_NOT_FOUND = "ERR_4001"
    FINE_ALREADY_PAID = "ERR_4002"
    PAYMENT_NOT_FOUND = "ERR_4003"
    INVALID_REFERENCE = "ERR_4004"

    # External service errors (5xxx)
    GATEWAY_ERROR = "ERR_5001"
    NOTIFIER_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationError(AppException):
    """Malformed amount, type or reference - raised before any write"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class InvalidReferenceError(ValidationError):
    """Transaction id carries a known prefix but cannot be decoded"""

    def __init__(self, reference: str, reason: str = "malformed payment reference"):
        super().__init__(
            message=f"Invalid payment reference '{reference}': {reason}",
            field="tran_id",
            error_code=ErrorCode.INVALID_REFERENCE,
            details={"reference": reference}
        )


class NotFoundError(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class DebtNotFoundError(NotFoundError):
    def __init__(self, debt_id: str):
        super().__init__("Debt", debt_id, ErrorCode.DEBT_NOT_FOUND)


class FineNotFoundError(NotFoundError):
    def __init__(self, fine_id: str):
        super().__init__("Fine", fine_id, ErrorCode.FINE_NOT_FOUND)


class PaymentNotFoundError(NotFoundError):
    """No payment record matches a gateway transaction id"""

    def __init__(self, transaction_id: str):
        super().__init__("Payment", transaction_id, ErrorCode.PAYMENT_NOT_FOUND)


class ConflictError(AppException):
    """Operation conflicts with the current state of a financial record"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.CONFLICT,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=409,
            details=details
        )


class DuplicateActiveDebtError(ConflictError):
    """More than one OUTSTANDING/PARTIAL debt exists (or would exist) for a user"""

    def __init__(self, user_id: str, debt_ids: list[str] | None = None):
        super().__init__(
            message=f"Duplicate active debt detected for user {user_id}",
            error_code=ErrorCode.DUPLICATE_ACTIVE_DEBT,
            details={"user_id": user_id, "debt_ids": debt_ids or []}
        )


class DebtAlreadySettledError(ConflictError):
    """Debt is PAID or WAIVED and accepts no further payments"""

    def __init__(self, debt_id: str, status: str):
        super().__init__(
            message=f"Debt {debt_id} is already {status}",
            error_code=ErrorCode.DEBT_ALREADY_SETTLED,
            details={"debt_id": debt_id, "status": status}
        )


class FineAlreadyPaidError(ConflictError):
    def __init__(self, fine_id: str):
        super().__init__(
            message=f"Fine {fine_id} is already paid",
            error_code=ErrorCode.FINE_ALREADY_PAID,
            details={"fine_id": fine_id}
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class GatewayError(ExternalServiceException):
    """Payment gateway rejected, failed or could not verify a request"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="payment_gateway",
            message=f"Payment gateway error: {message}",
            error_code=ErrorCode.GATEWAY_ERROR,
            details=details
        )
        self.status_code = 502

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "GatewayError":
        """Build a GatewayError from an HTTP response (e.g. httpx.Response)."""
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=message or f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class NotifierError(ExternalServiceException):
    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="notifier",
            message=f"Notifier error: {message}",
            error_code=ErrorCode.NOTIFIER_ERROR,
            details=details
        )


class ServiceTimeoutError(ExternalServiceException):
    """Raised when external service times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
