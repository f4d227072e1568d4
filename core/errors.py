"""
Typed failures raised by the order engine.

Every error carries the HTTP status the API layer renders it with. The
families never collapse into each other: a missing order is a NotFoundError,
never a ResourceExhaustedError.
"""
from typing import Optional


class BlindBoxError(Exception):
    status_code = 400
    code = "error"
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


# --- ValidationError family: malformed or missing input ---

class ValidationError(BlindBoxError):
    status_code = 400
    code = "validation_error"
    default_message = "Invalid request"


class AmountMismatch(ValidationError):
    code = "amount_mismatch"
    default_message = "Declared amount does not match the order items"


class MissingReference(ValidationError):
    code = "missing_reference"
    default_message = "Notification has no out_trade_no"


class PayloadParseError(ValidationError):
    code = "unparseable_payload"
    default_message = "Notification payload could not be parsed"


class OutOfWindow(ValidationError):
    code = "coupon_out_of_window"
    default_message = "Coupon is not within its validity window"


# --- NotFoundError family ---

class NotFoundError(BlindBoxError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"


class OrderNotFound(NotFoundError):
    code = "order_not_found"
    default_message = "Order not found"


class OrderItemNotFound(NotFoundError):
    code = "order_item_not_found"
    default_message = "Order item not found"


class CouponNotFound(NotFoundError):
    code = "coupon_not_found"
    default_message = "Coupon not found"


class SkuNotFound(NotFoundError):
    code = "sku_not_found"
    default_message = "Blind box not found or not listed"


class UserNotFound(NotFoundError):
    code = "user_not_found"
    default_message = "User not found"


class RechargeNotFound(NotFoundError):
    code = "recharge_not_found"
    default_message = "Recharge record not found"


# --- PermissionDenied: caller does not own the resource ---

class PermissionDenied(BlindBoxError):
    status_code = 403
    code = "permission_denied"
    default_message = "Not allowed to operate on this order"


# --- StateConflictError family: transition from the wrong state ---

class StateConflictError(BlindBoxError):
    status_code = 409
    code = "state_conflict"
    default_message = "Operation not allowed in the current state"


class InvalidState(StateConflictError):
    code = "invalid_state"
    default_message = "Order status abnormal"


class AlreadyCancelled(StateConflictError):
    code = "already_cancelled"
    default_message = "Order already cancelled"


class NotYetDelivered(StateConflictError):
    code = "not_delivered"
    default_message = "Order not delivered yet"


class AlreadyOpened(StateConflictError):
    code = "already_opened"
    default_message = "Blind box already opened"


class AlreadyUsed(StateConflictError):
    code = "coupon_already_used"
    default_message = "Coupon already used or expired"


# --- ResourceExhaustedError family ---

class ResourceExhaustedError(BlindBoxError):
    status_code = 400
    code = "resource_exhausted"
    default_message = "Resource exhausted"


class OutOfStock(ResourceExhaustedError):
    code = "out_of_stock"
    default_message = "Out of stock"


class InsufficientFunds(ResourceExhaustedError):
    code = "insufficient_funds"
    default_message = "Insufficient balance"


class CouponSoldOut(ResourceExhaustedError):
    code = "coupon_sold_out"
    default_message = "Coupon has no remaining quantity"


# --- Configuration / upstream ---

class ConfigurationError(BlindBoxError):
    status_code = 422
    code = "configuration_error"
    default_message = "Prize probabilities must sum to 1"


class UpstreamError(BlindBoxError):
    status_code = 502
    code = "upstream_error"
    default_message = "Payment gateway request failed"
