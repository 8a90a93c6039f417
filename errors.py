"""Exceptions raised by the storefront engines.

Each error carries a ``kind`` (the code clients see in ``error_type``) and the
HTTP status the API answers with.
"""
from typing import Optional


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    kind = "INTERNAL"
    status_code = 500


class BadRequestError(StorefrontError):
    """Raised when a required field is missing or invalid."""

    kind = "BAD_REQUEST"
    status_code = 400


class NotFoundError(StorefrontError):
    kind = "NOT_FOUND"
    status_code = 404


class OrderNotFoundError(NotFoundError):
    def __init__(self, ref: str):
        self.ref = ref
        super().__init__(f"Order not found: {ref}")


class ProductNotFoundError(NotFoundError):
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class ReviewNotFoundError(NotFoundError):
    def __init__(self, review_id: str):
        self.review_id = review_id
        super().__init__(f"Review not found: {review_id}")


class CartItemNotFoundError(NotFoundError):
    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Item not found in cart: {item_id}")


class DuplicateReviewError(StorefrontError):
    """Raised when the author already reviewed the product."""

    kind = "DUPLICATE_REVIEW"
    status_code = 409

    def __init__(self, product_id: str, user_id: str):
        self.product_id = product_id
        self.user_id = user_id
        super().__init__("You have already reviewed this product")


class InvalidTransitionError(StorefrontError):
    """Raised when a status change is not a legal edge of the order lifecycle."""

    kind = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move order from '{current}' to '{requested}'")


class OrderConflictError(StorefrontError):
    """Raised when the order changed status between read and write."""

    kind = "CONFLICT"
    status_code = 409

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} was modified concurrently, reload and retry")


class UpstreamUnavailableError(StorefrontError):
    kind = "UPSTREAM_UNAVAILABLE"
    status_code = 503

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or "Database unavailable")


class NotificationError(StorefrontError):
    """Raised by notifiers. Dispatch logs it and never lets it reach a caller."""

    kind = "NOTIFICATION_FAILED"

    def __init__(self, event: str, reason: str):
        self.event = event
        self.reason = reason
        super().__init__(f"Notification '{event}' failed: {reason}")
