from typing import Any, Optional


class OrderServiceError(Exception):
    """Base class for every non-success reconciliation outcome."""

    code = "internal_error"
    status_code = 500
    default_message = "An unexpected error occurred"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(OrderServiceError):
    code = "validation_error"
    status_code = 400
    default_message = "Invalid request"


class GatewayError(OrderServiceError):
    """Network failure, timeout or unexpected response from a payment gateway."""

    code = "gateway_error"
    status_code = 500
    default_message = "An error occurred while contacting the payment gateway"

    def __init__(
        self,
        message: Optional[str] = None,
        upstream_status: Optional[int] = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.upstream_status = upstream_status
        self.body = body


class PaymentFailure(OrderServiceError):
    code = "payment_failed"
    status_code = 400
    default_message = "Payment failed"


class AlreadyCapturedError(OrderServiceError):
    code = "already_captured"
    status_code = 400
    default_message = "Order already captured"


class AmountMismatchError(OrderServiceError):
    code = "amount_mismatch"
    status_code = 400
    default_message = "Captured amount does not match the order total"


class DuplicateTransactionError(OrderServiceError):
    """Another request already persisted this transaction; reported to clients as success."""

    code = "duplicate_transaction"
    status_code = 200
    default_message = "An order already exists for this transaction"


class OrderNotFound(OrderServiceError):
    code = "not_found"
    status_code = 404
    default_message = "Order not found"
