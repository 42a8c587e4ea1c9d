from typing import Any, Optional


class PaymentError(Exception):
    """Base class for every order/payment failure surfaced to callers."""

    code = "PAYMENT_ERROR"
    status_code = 400
    retryable = False

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message()
        self.details = details
        super().__init__(self.message)

    def default_message(self) -> str:
        return self.code.replace("_", " ").capitalize()

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error_code": self.code,
            "message": self.message,
            "details": self.details or None,
        }


class BookNotFound(PaymentError):
    code = "BOOK_NOT_FOUND"
    status_code = 404


class AlreadyPurchased(PaymentError):
    code = "ALREADY_PURCHASED"
    status_code = 409


class DuplicateOrder(PaymentError):
    """order_number collision; safe to retry the whole create call"""

    code = "DUPLICATE_ORDER"
    status_code = 409
    retryable = True


class IdempotencyKeyConflict(PaymentError):
    code = "IDEMPOTENCY_KEY_CONFLICT"
    status_code = 422


class AmountMismatch(PaymentError):
    """Client price or gateway-paid amount disagrees with the server-side price."""

    code = "AMOUNT_MISMATCH"
    status_code = 422


class RateLimited(PaymentError):
    code = "RATE_LIMITED"
    status_code = 429
    retryable = True

    def __init__(self, retry_after: int, message: Optional[str] = None):
        self.retry_after = retry_after
        super().__init__(
            message or "Too many order attempts. Please try again later.",
            retry_after_seconds=retry_after,
        )


class OrderNotFound(PaymentError):
    code = "ORDER_NOT_FOUND"
    status_code = 404


class OrderNotPending(PaymentError):
    code = "ORDER_NOT_PENDING"
    status_code = 409

    def __init__(self, current_status: str, message: Optional[str] = None):
        self.current_status = current_status
        super().__init__(
            message or f"Order is '{current_status}', expected 'pending'",
            current_status=current_status,
        )


class RefundNotAllowed(PaymentError):
    code = "REFUND_NOT_ALLOWED"
    status_code = 409


class RefundNotFound(PaymentError):
    code = "REFUND_NOT_FOUND"
    status_code = 404


class InvalidWebhookSignature(PaymentError):
    code = "INVALID_SIGNATURE"
    status_code = 400


class GatewayError(PaymentError):
    code = "GATEWAY_ERROR"
    status_code = 502
    retryable = True


class PaymentWindowBlocked(PaymentError):
    code = "PAYMENT_WINDOW_BLOCKED"
    status_code = 400


ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (
        BookNotFound,
        AlreadyPurchased,
        DuplicateOrder,
        IdempotencyKeyConflict,
        AmountMismatch,
        RateLimited,
        OrderNotFound,
        OrderNotPending,
        RefundNotAllowed,
        RefundNotFound,
        InvalidWebhookSignature,
        GatewayError,
    )
}
