"""Error taxonomy for the store backend.

Every error carries the HTTP status it maps to; ``main.py`` turns them into
``{"success": false, "message": ...}`` envelopes.
"""

from enum import Enum
from typing import Any, List, Optional


class StoreError(Exception):
    """Base exception for all store errors."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(StoreError):
    """Raised when request data is malformed or missing."""

    status_code = 400

    def __init__(self, message: str, errors: Optional[List[Any]] = None):
        self.errors = errors
        super().__init__(message)


class AuthenticationError(StoreError):
    status_code = 401

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)


class ForbiddenError(StoreError):
    status_code = 403

    def __init__(self, message: str = "Not authorized"):
        super().__init__(message)


class NotFoundError(StoreError):
    status_code = 404

    def __init__(self, what: str, ident: Optional[str] = None):
        self.what = what
        self.ident = ident
        super().__init__(f"{what} not found")


class ConflictError(StoreError):
    """Raised when a uniqueness rule or a concurrent change blocks the write."""

    status_code = 409


class BusinessRuleError(StoreError):
    status_code = 400


class ProductUnavailableError(BusinessRuleError):
    def __init__(self, product_id: str, name: Optional[str] = None):
        self.product_id = product_id
        if name:
            msg = f"Product {name} is not available"
        else:
            msg = f"Product {product_id} not found"
        super().__init__(msg)


class InsufficientStockError(BusinessRuleError):
    def __init__(self, name: str, available: int, requested: int):
        self.name = name
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for {name}. Available: {available}, Requested: {requested}"
        )


class CouponFailure(str, Enum):
    NOT_FOUND = "not_found"
    NOT_YET_VALID = "not_yet_valid"
    EXPIRED = "expired"
    LIMIT_REACHED = "limit_reached"
    BELOW_MINIMUM = "below_minimum"


_COUPON_MESSAGES = {
    CouponFailure.NOT_FOUND: "Invalid or expired coupon code",
    CouponFailure.NOT_YET_VALID: "Coupon is not yet valid",
    CouponFailure.EXPIRED: "Coupon has expired",
    CouponFailure.LIMIT_REACHED: "Coupon usage limit reached",
}


class CouponError(BusinessRuleError):
    """Raised when a coupon cannot be applied; ``reason`` says why."""

    def __init__(self, reason: CouponFailure, minimum: Optional[float] = None):
        self.reason = reason
        self.minimum = minimum
        if reason is CouponFailure.BELOW_MINIMUM:
            msg = f"Minimum purchase amount of ₹{minimum} required"
        else:
            msg = _COUPON_MESSAGES[reason]
        super().__init__(msg)
        if reason is CouponFailure.NOT_FOUND:
            self.status_code = 404


class GatewayUnavailableError(StoreError):
    status_code = 503

    def __init__(self, message: str = "Payment service is not configured. Please add Razorpay keys to enable payments."):
        super().__init__(message)


class GatewayError(StoreError):
    """Raised when a payment provider call fails; the provider detail is logged, not returned."""

    status_code = 502

    def __init__(self, operation: str, detail: Optional[str] = None):
        self.operation = operation
        self.detail = detail
        super().__init__("Payment provider request failed. Please try again.")


class SignatureMismatchError(StoreError):
    status_code = 400

    def __init__(self):
        super().__init__("Payment verification failed: Invalid signature")
