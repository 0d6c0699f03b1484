"""
Order domain models and pricing.

Money is carried as integer cents everywhere. Orders are immutable: every
state change goes through ``Order.transition_to`` which returns a new copy
with a bumped version for optimistic locking.
"""

import os
import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, computed_field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# CONFIGURATION
# =============================================================================

class PricingConfig:
    """Pricing rules from environment"""

    TAX_RATE = Decimal(os.getenv("TAX_RATE", "0.10"))
    FREE_SHIPPING_THRESHOLD_CENTS = int(os.getenv("FREE_SHIPPING_THRESHOLD_CENTS", "10000"))
    SHIPPING_FEE_CENTS = int(os.getenv("SHIPPING_FEE_CENTS", "1000"))
    CURRENCY = os.getenv("CURRENCY", "usd")


pricing = PricingConfig()


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(str, Enum):
    CREATED = "created"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    PAYMENT_FAILED = "payment_failed"
    DELIVERED = "delivered"


class PaymentProvider(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"


# =============================================================================
# DOMAIN MODELS
# =============================================================================

class OrderItem(BaseModel):
    product_id: str
    name: str
    qty: int = Field(..., ge=1)
    unit_price_cents: int = Field(..., ge=0)
    image: Optional[str] = None

    @computed_field
    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.qty


class ShippingAddress(BaseModel):
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)


class PaymentResult(BaseModel):
    """What a provider told us about a payment attempt"""
    provider: PaymentProvider
    reference: Optional[str] = None  # checkout session id / PayPal order id
    capture_id: Optional[str] = None
    status: str
    email_address: Optional[str] = None
    amount_cents: Optional[int] = None
    error_message: Optional[str] = None
    update_time: datetime = Field(default_factory=utcnow)


class Order(BaseModel):
    """Core order entity"""
    order_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    items: list[OrderItem]
    shipping_address: ShippingAddress
    payment_method: PaymentProvider

    items_price_cents: int = 0
    tax_price_cents: int = 0
    shipping_price_cents: int = 0
    total_price_cents: int = 0
    currency: str = pricing.CURRENCY

    status: OrderStatus = OrderStatus.CREATED
    previous_status: Optional[OrderStatus] = None

    payment_provider: Optional[PaymentProvider] = None
    payment_reference: Optional[str] = None
    payment_result: Optional[PaymentResult] = None

    stock_committed: bool = False
    stock_shortfall: list[dict] = Field(default_factory=list)

    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    version: int = 1

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    paid_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None

    @computed_field
    @property
    def is_paid(self) -> bool:
        return self.status in (OrderStatus.PAID, OrderStatus.DELIVERED)

    @computed_field
    @property
    def is_delivered(self) -> bool:
        return self.status == OrderStatus.DELIVERED

    def transition_to(self, new_status: OrderStatus, **changes) -> "Order":
        """Immutable state transition. Bumps version for the CAS save."""
        return self.model_copy(update={
            **changes,
            "previous_status": self.status,
            "status": new_status,
            "updated_at": utcnow(),
            "version": self.version + 1,
        })

    def with_changes(self, **changes) -> "Order":
        """Field update without a status change (still versioned)"""
        return self.model_copy(update={
            **changes,
            "updated_at": utcnow(),
            "version": self.version + 1,
        })


# =============================================================================
# PRICING
# =============================================================================

class OrderPrices(BaseModel):
    items_price_cents: int
    tax_price_cents: int
    shipping_price_cents: int
    total_price_cents: int


def calculate_prices(items: list[OrderItem], config: PricingConfig = pricing) -> OrderPrices:
    items_total = sum(item.line_total_cents for item in items)
    tax = int((Decimal(items_total) * config.TAX_RATE).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    shipping = 0 if items_total > config.FREE_SHIPPING_THRESHOLD_CENTS else config.SHIPPING_FEE_CENTS
    return OrderPrices(
        items_price_cents=items_total,
        tax_price_cents=tax,
        shipping_price_cents=shipping,
        total_price_cents=items_total + tax + shipping,
    )


def cents_to_decimal_string(cents: int) -> str:
    """Format cents the way PayPal wants amounts: '12.50'"""
    return str((Decimal(cents) / Decimal(100)).quantize(Decimal("0.01")))


# =============================================================================
# PROVIDER POLLING
# =============================================================================

class PaymentState(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentCheck(BaseModel):
    """A gateway's answer to "what happened to this order's payment?" """
    state: PaymentState
    result: Optional[PaymentResult] = None
