"""Errors raised by the cart and checkout client.

Each carries a ``title`` and ``message`` fit for a modal or toast.
"""
from __future__ import annotations
from typing import Optional


class StorefrontError(Exception):
    title = "Something went wrong"

    def __init__(self, message: str, title: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if title:
            self.title = title
        self.status_code = status_code


class ValidationError(StorefrontError):
    """Detected client-side; never sent to the server."""
    title = "Invalid Information"


class EmptySelection(ValidationError):
    title = "No Items Selected"

    def __init__(self, message: str = "Please select at least one item to checkout"):
        super().__init__(message)


class MissingProductId(ValidationError):
    title = "Cart Error"

    def __init__(self, line_ids: list[str]):
        super().__init__(
            "Some items in your cart are missing product information. Please refresh the page and try again."
        )
        self.line_ids = line_ids


class StockExceeded(StorefrontError):
    title = "Stock limit reached"

    def __init__(self, message: str, available: Optional[int] = None, status_code: Optional[int] = 400):
        super().__init__(message, status_code=status_code)
        self.available = available


class NotFound(StorefrontError):
    title = "Not found"


class Unauthorized(StorefrontError):
    title = "Please sign in"


class NetworkOrServerError(StorefrontError):
    title = "Request failed"


class OrderCreationFailed(StorefrontError):
    title = "Payment Failed"


class PaymentLinkFailed(StorefrontError):
    title = "Payment Failed"
