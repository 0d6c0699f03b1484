"""
Domain exceptions. Each one carries the HTTP status the API layer answers with.
"""

from typing import Any, Optional


class BoutiqueError(Exception):
    """Base class for every error the service raises on purpose"""

    status_code: int = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidOrderError(BoutiqueError):
    status_code = 400


class OrderNotFoundError(BoutiqueError):
    status_code = 404

    def __init__(self, order_id: str):
        super().__init__(f"Order not found: {order_id}", {"order_id": order_id})
        self.order_id = order_id


class ProductNotFoundError(BoutiqueError):
    status_code = 404

    def __init__(self, product_id: str):
        super().__init__(f"Product not found: {product_id}", {"product_id": product_id})
        self.product_id = product_id


class InvalidTransitionError(BoutiqueError):
    status_code = 409

    def __init__(self, current: str, event: str):
        super().__init__(
            f"Cannot apply '{event}' to an order in status '{current}'",
            {"status": current, "event": event},
        )
        self.current = current
        self.event = event


class InsufficientStockError(BoutiqueError):
    """Raised with one entry per short product line"""

    status_code = 409

    def __init__(self, shortfalls: list[dict]):
        names = ", ".join(str(s.get("name") or s["product_id"]) for s in shortfalls)
        super().__init__(f"Insufficient stock for {names}", shortfalls)
        self.shortfalls = shortfalls


class ConcurrentUpdateError(BoutiqueError):
    status_code = 409

    def __init__(self, order_id: str, expected_version: int):
        super().__init__(
            f"Order {order_id} was modified concurrently",
            {"order_id": order_id, "expected_version": expected_version},
        )


class PaymentProviderError(BoutiqueError):
    status_code = 502


class WebhookVerificationError(BoutiqueError):
    status_code = 400


class AuthenticationError(BoutiqueError):
    status_code = 401


class AuthorizationError(BoutiqueError):
    status_code = 403


class NotificationNotFoundError(BoutiqueError):
    status_code = 404

    def __init__(self, notification_id: str):
        super().__init__(f"Notification not found: {notification_id}", {"notification_id": notification_id})
