# Orders - domain, lifecycle and stock
# ====================================

from .models import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentProvider,
    PaymentResult,
    ShippingAddress,
    calculate_prices,
)
from .state_machine import LifecycleEvent, Transition, plan_transition
from .inventory import IInventory, InMemoryInventory, PostgresInventory, Product
from .repository import IOrderRepository, InMemoryOrderRepository, PostgresOrderRepository

__all__ = [
    # Models
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentProvider",
    "PaymentResult",
    "ShippingAddress",
    "calculate_prices",
    # State machine
    "LifecycleEvent",
    "Transition",
    "plan_transition",
    # Stock
    "IInventory",
    "InMemoryInventory",
    "PostgresInventory",
    "Product",
    # Persistence
    "IOrderRepository",
    "InMemoryOrderRepository",
    "PostgresOrderRepository",
]
