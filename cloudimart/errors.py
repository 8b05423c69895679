"""Store error taxonomy.

Every business-rule failure raised by the workflows is a ``StoreError``.
``main.py`` renders them as ``{"success": false, "code": ..., "message": ...}``
plus the error's ``detail`` fields, using the class's status code.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional


class StoreError(Exception):
    status_code = 400
    code = "error"
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None, **detail: Any) -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "code": self.code, "message": self.message}
        body.update(self.detail)
        return body


class ValidationError(StoreError):
    status_code = 422
    code = "validation_error"
    default_message = "Invalid input"


class OutsideDeliveryZone(StoreError):
    status_code = 422
    code = "outside_delivery_zone"
    default_message = "Delivery address is outside our service area."


class EmptyCart(StoreError):
    status_code = 422
    code = "empty_cart"
    default_message = "Cart is empty"


class AmountMismatch(StoreError):
    status_code = 422
    code = "amount_mismatch"
    default_message = "Payment amount mismatch. Please contact support."

    def __init__(self, expected: Decimal, received: Decimal, message: Optional[str] = None) -> None:
        self.expected = expected
        self.received = received
        super().__init__(message, expected=str(expected), received=str(received))


class InsufficientStock(StoreError):
    status_code = 409
    code = "insufficient_stock"
    default_message = "Some items are out of stock"

    def __init__(self, items: List[Dict[str, int]], message: Optional[str] = None) -> None:
        self.items = items
        super().__init__(message, items=items)


class PaymentNotFound(StoreError):
    status_code = 404
    code = "payment_not_found"
    default_message = "Payment not found"


class OrderNotFound(StoreError):
    status_code = 404
    code = "order_not_found"
    default_message = "Order not found"


class DeliveryNotFound(StoreError):
    status_code = 404
    code = "delivery_not_found"
    default_message = "Delivery not found"


class PaymentStateConflict(StoreError):
    status_code = 409
    code = "payment_state_conflict"
    default_message = "Payment can no longer change state"


class DeliveryStateConflict(StoreError):
    status_code = 409
    code = "delivery_state_conflict"
    default_message = "Delivery is already completed"


class CartLocked(StoreError):
    status_code = 409
    code = "cart_locked"
    default_message = (
        "You have a pending payment. Please wait for admin approval or cancel it before adding items."
    )


class ChallengeFailed(StoreError):
    status_code = 403
    code = "challenge_failed"
    default_message = "Phone number does not match customer"


class IntegrityViolation(StoreError):
    """Unexpected failure. The caller only ever sees the generic message."""

    status_code = 500
    code = "integrity_violation"
    default_message = "Something went wrong while processing your order"

    def __init__(self, reason: str = "", **context: Any) -> None:
        self.reason = reason
        self.context = context
        super().__init__(None)

    def __str__(self) -> str:
        return f"{self.reason} {self.context}" if self.reason else self.message


class GatewayUnavailable(StoreError):
    status_code = 502
    code = "gateway_unavailable"
    default_message = "Payment provider unavailable"
