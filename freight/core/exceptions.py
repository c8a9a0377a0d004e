"""
Custom Exception Hierarchy

Every business failure raised inside the services is an AppException. The
service boundary (see freight.core.result) turns it into a failed
ServiceResult, the API layer turns that into JSON with the status code below.
"""
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Coarse classification that callers branch on"""

    VALIDATION = "validation"
    INVARIANT_VIOLATION = "invariant_violation"
    NOT_FOUND = "not_found"
    EXTERNAL_RETRYABLE = "external_retryable"
    EXTERNAL_TERMINAL = "external_terminal"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    INTERNAL = "internal"


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    CONCURRENCY_CONFLICT = "ERR_1004"

    # Cargo request / trip errors (2xxx)
    CARGO_REQUEST_NOT_FOUND = "ERR_2001"
    TRIP_NOT_FOUND = "ERR_2002"
    INVALID_STATE_TRANSITION = "ERR_2003"

    # Bidding errors (3xxx)
    BID_NOT_FOUND = "ERR_3001"
    BID_EXPIRED = "ERR_3002"
    BID_ALREADY_DECIDED = "ERR_3003"
    REQUEST_ALREADY_AWARDED = "ERR_3004"

    # Wallet errors (4xxx)
    WALLET_NOT_FOUND = "ERR_4001"
    INSUFFICIENT_FUNDS = "ERR_4002"
    INVALID_AMOUNT = "ERR_4003"
    WALLET_INACTIVE = "ERR_4004"
    CURRENCY_MISMATCH = "ERR_4005"

    # Payment errors (5xxx)
    PAYMENT_NOT_FOUND = "ERR_5001"
    PAYMENT_AMOUNT_MISMATCH = "ERR_5002"
    GATEWAY_DECLINED = "ERR_5003"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5004"

    # Commission errors (6xxx)
    COMMISSION_RULE_NOT_FOUND = "ERR_6001"
    INVALID_COMMISSION_RULE = "ERR_6002"


class AppException(Exception):
    """Base exception for all application errors"""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
        kind: ErrorKind | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        if kind is not None:
            self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind in (ErrorKind.EXTERNAL_RETRYABLE, ErrorKind.CONCURRENCY_CONFLICT)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "kind": self.kind.value,
                "message": self.message,
                "details": self.details,
            }
        }


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidationException(AppException):
    """Malformed input, rejected before any state change"""

    kind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=422,
            details=details,
        )
        if field:
            self.details["field"] = field


class InvalidAmountError(ValidationException):
    def __init__(self, amount: Any, field: str = "amount"):
        super().__init__(
            message=f"Amount must be positive, got {amount}",
            field=field,
            details={"amount": str(amount)},
            error_code=ErrorCode.INVALID_AMOUNT,
        )


class CurrencyMismatchError(ValidationException):
    def __init__(self, expected: str, actual: str):
        super().__init__(
            message=f"Currency mismatch: expected {expected}, got {actual}",
            field="currency",
            details={"expected": expected, "actual": actual},
            error_code=ErrorCode.CURRENCY_MISMATCH,
        )


class PaymentAmountMismatchError(ValidationException):
    def __init__(self, payment_number: str, expected: Any, actual: Any):
        super().__init__(
            message=f"Amount {actual} does not match payment {payment_number} ({expected})",
            field="amount",
            details={"payment_number": payment_number, "expected": str(expected), "actual": str(actual)},
            error_code=ErrorCode.PAYMENT_AMOUNT_MISMATCH,
        )


class InvalidCommissionRuleError(ValidationException):
    def __init__(self, message: str, field: str | None = None):
        super().__init__(message=message, field=field, error_code=ErrorCode.INVALID_COMMISSION_RULE)


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------

class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    kind = ErrorKind.NOT_FOUND

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


class CargoRequestNotFoundError(NotFoundException):
    def __init__(self, request_id: int):
        super().__init__("CargoRequest", request_id, ErrorCode.CARGO_REQUEST_NOT_FOUND)


class TripNotFoundError(NotFoundException):
    def __init__(self, identifier: Any):
        super().__init__("Trip", identifier, ErrorCode.TRIP_NOT_FOUND)


class BidNotFoundError(NotFoundException):
    def __init__(self, bid_id: int):
        super().__init__("Bid", bid_id, ErrorCode.BID_NOT_FOUND)


class PaymentNotFoundError(NotFoundException):
    def __init__(self, identifier: Any):
        super().__init__("Payment", identifier, ErrorCode.PAYMENT_NOT_FOUND)


class WalletNotFoundError(NotFoundException):
    def __init__(self, owner_id: int):
        super().__init__("Wallet", owner_id, ErrorCode.WALLET_NOT_FOUND)


class CommissionRuleNotFoundError(NotFoundException):
    def __init__(self, rule_id: int):
        super().__init__("CommissionRule", rule_id, ErrorCode.COMMISSION_RULE_NOT_FOUND)


# ---------------------------------------------------------------------------
# Invariant violations
# ---------------------------------------------------------------------------

class InvariantViolationError(AppException):
    """Operation not allowed in the aggregate's current state"""

    kind = ErrorKind.INVARIANT_VIOLATION

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=409,
            details=details
        )


class InvalidStateTransitionError(InvariantViolationError):
    """Raised when state transition is not allowed"""

    def __init__(self, entity: str, entity_id: Any, current_state: str, target_state: str):
        super().__init__(
            message=f"{entity} {entity_id}: invalid transition from '{current_state}' to '{target_state}'",
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            details={
                "entity": entity,
                "entity_id": entity_id,
                "current_state": current_state,
                "target_state": target_state,
            }
        )


class BidExpiredError(InvariantViolationError):
    def __init__(self, bid_id: int, expires_at: Any):
        super().__init__(
            message=f"Bid {bid_id} expired at {expires_at}",
            error_code=ErrorCode.BID_EXPIRED,
            details={"bid_id": bid_id, "expires_at": str(expires_at)}
        )


class BidAlreadyDecidedError(InvariantViolationError):
    def __init__(self, bid_id: int, decision: str):
        super().__init__(
            message=f"Bid {bid_id} was already {decision}",
            error_code=ErrorCode.BID_ALREADY_DECIDED,
            details={"bid_id": bid_id, "decision": decision}
        )


class RequestAlreadyAwardedError(InvariantViolationError):
    def __init__(self, request_id: int, accepted_bid_id: int | None = None):
        super().__init__(
            message=f"Cargo request {request_id} already has an accepted bid",
            error_code=ErrorCode.REQUEST_ALREADY_AWARDED,
            details={"request_id": request_id, "accepted_bid_id": accepted_bid_id}
        )


class InsufficientFundsError(InvariantViolationError):
    """Raised when an available or pending balance cannot cover a debit"""

    def __init__(self, wallet_id: int, balance_name: str, current: Any, required: Any):
        super().__init__(
            message=f"Insufficient {balance_name} balance in wallet {wallet_id}",
            error_code=ErrorCode.INSUFFICIENT_FUNDS,
            details={
                "wallet_id": wallet_id,
                "balance": balance_name,
                "current": str(current),
                "required": str(required),
            }
        )


class WalletInactiveError(InvariantViolationError):
    def __init__(self, wallet_id: int):
        super().__init__(
            message=f"Wallet {wallet_id} is inactive",
            error_code=ErrorCode.WALLET_INACTIVE,
            details={"wallet_id": wallet_id}
        )


class DuplicateEntryError(InvariantViolationError):
    def __init__(self, resource: str, details: dict[str, Any]):
        super().__init__(
            message=f"{resource} already exists",
            error_code=ErrorCode.ALREADY_EXISTS,
            details=details
        )


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

class ConcurrencyConflictError(AppException):
    """Lost an optimistic-lock race; caller should reload and retry"""

    kind = ErrorKind.CONCURRENCY_CONFLICT

    def __init__(self, message: str = "Concurrent modification detected", details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.CONCURRENCY_CONFLICT,
            status_code=409,
            details=details
        )


# ---------------------------------------------------------------------------
# External services
# ---------------------------------------------------------------------------

class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    kind = ErrorKind.EXTERNAL_RETRYABLE

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None,
        retryable: bool = True,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503 if retryable else 502,
            details=details,
            kind=ErrorKind.EXTERNAL_RETRYABLE if retryable else ErrorKind.EXTERNAL_TERMINAL,
        )
        self.details["service"] = service_name
        self.service_name = service_name


class GatewayError(ExternalServiceException):
    """Payment gateway failure. ``retryable`` separates outages from declines."""

    def __init__(
        self,
        gateway: str,
        message: str,
        *,
        retryable: bool,
        gateway_code: Any = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            service_name=gateway,
            message=f"{gateway} gateway error: {message}",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE if retryable else ErrorCode.GATEWAY_DECLINED,
            details=details,
            retryable=retryable,
        )
        self.gateway_code = gateway_code
        if gateway_code is not None:
            self.details["gateway_code"] = gateway_code

    @classmethod
    def from_response(
        cls,
        gateway: str,
        operation: str,
        response: Any,
        *,
        retryable: bool,
        max_response_chars: int = 500,
    ) -> "GatewayError":
        """Build a GatewayError out of an httpx response"""
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            gateway,
            f"{operation} returned status {status_code}",
            retryable=retryable,
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
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
