"""Exceptions raised by the storefront services.

Each error carries a message that is safe to show to API clients. The
HTTP status for each type lives in ERROR_STATUS_CODES; main.py turns them
into JSON responses.
"""
from typing import Optional


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(StorefrontError):
    """Raised for missing or malformed input."""

    pass


class NotFound(StorefrontError):
    """Raised when an entity does not exist."""

    pass


class ProductNotFound(NotFound):
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class CartNotFound(NotFound):
    def __init__(self):
        super().__init__("Cart not found")


class OrderNotFound(NotFound):
    def __init__(self, ref: str):
        self.ref = ref
        super().__init__(f"Order not found: {ref}")


class CouponNotFound(NotFound):
    def __init__(self, coupon_id: str):
        self.coupon_id = coupon_id
        super().__init__(f"Coupon not found: {coupon_id}")


class UserNotFound(NotFound):
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class EmptyCart(StorefrontError):
    def __init__(self):
        super().__init__("Cart is empty")


class InsufficientStock(StorefrontError):
    """Raised when a product cannot cover the requested quantity."""

    def __init__(self, product_id: str, title: Optional[str] = None, available: Optional[int] = None):
        self.product_id = product_id
        self.title = title
        self.available = available
        name = title or product_id
        msg = f"Insufficient stock for {name}"
        if available is not None:
            msg = f"{msg} (available: {available})"
        super().__init__(msg)


class InvalidCoupon(StorefrontError):
    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Invalid or expired coupon: {code}")


class SignatureMismatch(StorefrontError):
    """Raised when a payment callback fails authentication."""

    def __init__(self, reason: str = "Invalid payment signature"):
        super().__init__(reason)


class Unauthorized(StorefrontError):
    pass


class Forbidden(StorefrontError):
    pass


class Conflict(StorefrontError):
    pass


# Map exception types to HTTP status codes
ERROR_STATUS_CODES: dict = {
    ValidationError: 400,
    NotFound: 404,
    EmptyCart: 400,
    InsufficientStock: 400,
    InvalidCoupon: 400,
    SignatureMismatch: 400,
    Unauthorized: 401,
    Forbidden: 403,
    Conflict: 409,
}


def status_code_for(exc: StorefrontError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500
