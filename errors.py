"""Custom exceptions for the storefront checkout and order API."""

from typing import List, Optional


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    pass


class StorageError(StorefrontError):
    """Raised when a database operation fails and no fallback exists."""

    def __init__(self, operation: str, cause: Optional[Exception] = None):
        self.operation = operation
        self.cause = cause
        msg = f"Storage operation failed: {operation}"
        if cause is not None:
            msg = f"{msg} ({cause})"
        super().__init__(msg)


class SessionNotFoundError(StorefrontError):
    """Raised when a checkout session doesn't exist in storage."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Checkout session not found: {session_id}")


class OrderNotFoundError(StorefrontError):
    """Raised when an order can't be found by any of its references."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Order not found: {reference}")


class CartItemNotFoundError(StorefrontError):
    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Cart item not found: {item_id}")


class InvalidShippingMethodError(StorefrontError):
    """Raised when a shipping option id is not in the catalog."""

    def __init__(self, option_id: Optional[str]):
        self.option_id = option_id
        super().__init__("Invalid shipping method")


class InvalidStatusError(StorefrontError):
    """Raised when a status value is not one of the known statuses."""

    def __init__(self, status: str, kind: str = "order"):
        self.status = status
        self.kind = kind
        super().__init__(f"Invalid {kind} status: {status}")


class InvalidStatusTransitionError(StorefrontError):
    """Raised when a status change is not in the allowed transition map."""

    def __init__(self, current: str, requested: str, allowed: List[str], kind: str = "order"):
        self.current = current
        self.requested = requested
        self.allowed = allowed
        self.kind = kind
        label = "Invalid status transition" if kind == "order" else "Invalid payment status transition"
        super().__init__(
            f"{label}: Cannot change from {current} to {requested}. "
            f"Allowed transitions: {', '.join(allowed)}"
        )


class UndoNotAvailableError(StorefrontError):
    """Raised when an undo is requested outside the undo window."""

    def __init__(self, order_id: str, reason: str):
        self.order_id = order_id
        self.reason = reason
        super().__init__(f"Cannot undo status change for order {order_id}: {reason}")


class WebhookVerificationError(StorefrontError):
    """Raised when a payment webhook payload can't be trusted."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Webhook verification failed: {reason}")


class RefundError(StorefrontError):
    """Raised when a refund request can't be applied to its order."""

    def __init__(self, payment_id: str, reason: str):
        self.payment_id = payment_id
        self.reason = reason
        super().__init__(f"Cannot refund payment {payment_id}: {reason}")
