"""Error kinds returned by the fulfillment core.

Every error carries a stable ``code`` (rendered in API envelopes) and the HTTP
status the API layer maps it to.
"""

from __future__ import annotations


class FulfillmentError(Exception):
    """Base exception for all fulfillment errors."""

    code = "FulfillmentError"
    http_status = 400

    def __init__(self, message: str = "", **details):
        self.details = details
        super().__init__(message or self.code)

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else self.code

    def to_dict(self) -> dict:
        payload = {
            "ok": False,
            "error": self.code,
            "message": self.message,
            "status": int(self.http_status),
        }
        if self.details:
            payload["details"] = {k: v for k, v in self.details.items() if v is not None}
        return payload


class ValidationError(FulfillmentError):
    code = "ValidationError"
    http_status = 400


class NotFound(FulfillmentError):
    code = "NotFound"
    http_status = 404


class ProductUnavailable(FulfillmentError):
    """Raised when the product listing is not available for a new order."""

    code = "ProductUnavailable"
    http_status = 409

    def __init__(self, product_id: str, status: str | None = None):
        self.product_id = product_id
        msg = f"Product {product_id} is not available"
        if status:
            msg = f"{msg} (status={status})"
        super().__init__(msg, product_id=product_id, status=status)


class InsufficientFunds(FulfillmentError):
    code = "InsufficientFunds"
    http_status = 402

    def __init__(self, user_id: str, required: int, available: int):
        self.user_id = user_id
        self.required = int(required)
        self.available = int(available)
        super().__init__(
            f"Available balance {available} is below required amount {required}",
            user_id=user_id,
            required=int(required),
            available=int(available),
        )


class Unauthorized(FulfillmentError):
    code = "Unauthorized"
    http_status = 403


class InvalidTransition(FulfillmentError):
    """Raised when an operation is not allowed from the current status."""

    code = "InvalidTransition"
    http_status = 409

    def __init__(self, subject: str, current: str, action: str):
        self.subject = subject
        self.current = current
        self.action = action
        super().__init__(
            f"Cannot {action} {subject} in status {current}",
            subject=subject,
            current=current,
            action=action,
        )


class DisputeWindowExpired(FulfillmentError):
    code = "DisputeWindowExpired"
    http_status = 409


class NotDisputed(FulfillmentError):
    code = "NotDisputed"
    http_status = 409


class AlreadyResolved(FulfillmentError):
    code = "AlreadyResolved"
    http_status = 409

    def __init__(self, order_id: str, outcome: str):
        self.order_id = order_id
        self.outcome = outcome
        super().__init__(
            f"Order {order_id} was already resolved with outcome {outcome}",
            order_id=order_id,
            outcome=outcome,
        )


class NotRouted(FulfillmentError):
    code = "NotRouted"
    http_status = 409


class Conflict(FulfillmentError):
    """Optimistic-lock contention; retried internally before surfacing."""

    code = "Conflict"
    http_status = 409


class PaymentDeclined(FulfillmentError):
    code = "PaymentDeclined"
    http_status = 402
