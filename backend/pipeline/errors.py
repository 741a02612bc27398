"""
Lifecycle Errors
================
Domain error taxonomy for the order/payment lifecycle.

Each error carries the HTTP status the API layer surfaces it with.
Duplicate deliveries and unknown event types are not errors: the gates
acknowledge them with a status string instead of raising.
"""

from typing import Optional


class LifecycleError(Exception):
    """Base class for errors surfaced to API callers"""

    status_code: int = 400

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class AuthenticationFailure(LifecycleError):
    """Bad webhook signature or bot secret token. Never retried internally."""

    status_code = 400


class OrderNotFound(LifecycleError):
    status_code = 404

    def __init__(self, order_id: Optional[str] = None):
        super().__init__("Order not found", order_id=order_id)
        self.order_id = order_id


class ProductNotFound(LifecycleError):
    status_code = 404

    def __init__(self, product_id: Optional[str] = None):
        super().__init__("Product not found", product_id=product_id)
        self.product_id = product_id


class ProductInactive(LifecycleError):
    status_code = 400

    def __init__(self, product_id: Optional[str] = None):
        super().__init__("Product is not available", product_id=product_id)
        self.product_id = product_id


class PriceTooLow(LifecycleError):
    status_code = 400

    def __init__(self, amount_minor: int, minimum_minor: int):
        super().__init__(
            "Product price too low for payment processing",
            amount_minor=amount_minor,
            minimum_minor=minimum_minor,
        )
        self.amount_minor = amount_minor
        self.minimum_minor = minimum_minor


class OrderNotPayable(LifecycleError):
    status_code = 400

    def __init__(self, order_id: str, status: str):
        super().__init__("Order cannot be paid", order_id=order_id, status=status)
        self.order_id = order_id
        self.status = status
