"""
Service wiring.

One place that decides which backend each interface gets (in-memory or
PostgreSQL) and hands the same instances to the API, the gateways and the
reconciliation loop.
"""

from typing import Any, Optional

import stripe
import structlog

from boutique.audit import BlackBoxAuditLog, IAuditLog, InMemoryAuditLog
from boutique.notifications import (
    InMemoryNotificationStore,
    NotificationService,
    PostgresNotificationStore,
)
from boutique.orders.inventory import IInventory, InMemoryInventory, PostgresInventory, Product
from boutique.orders.models import PaymentProvider
from boutique.orders.repository import InMemoryOrderRepository, PostgresOrderRepository
from boutique.orders.service import IPaymentGateway, OrderLifecycle
from boutique.payments.paypal_gateway import PayPalClient, PayPalGateway
from boutique.payments.stripe_gateway import StripeGateway
from boutique.payments.webhooks import (
    InMemoryDeadLetterQueue,
    InMemoryIdempotencyStore,
    PostgresIdempotencyStore,
    WebhookProcessor,
)

logger = structlog.get_logger().bind(component="container")


class Services:
    """Everything a running boutique process needs"""

    def __init__(
        self,
        lifecycle: OrderLifecycle,
        processor: WebhookProcessor,
        stripe_gateway: StripeGateway,
        paypal_gateway: PayPalGateway,
    ):
        self.lifecycle = lifecycle
        self.processor = processor
        self.stripe = stripe_gateway
        self.paypal = paypal_gateway

    @property
    def inventory(self) -> IInventory:
        return self.lifecycle.inventory

    @property
    def notifications(self) -> NotificationService:
        return self.lifecycle.notifications

    @property
    def gateways(self) -> dict[PaymentProvider, IPaymentGateway]:
        return {
            PaymentProvider.STRIPE: self.stripe,
            PaymentProvider.PAYPAL: self.paypal,
        }

    async def close(self):
        await self.paypal.close()


def build_services(
    backend: str = "memory",
    products: Optional[list[Product]] = None,
    stripe_client: Any = stripe,
    stripe_webhook_secret: Optional[str] = None,
    paypal_client: Optional[PayPalClient] = None,
    paypal_webhook_id: Optional[str] = None,
    paypal_verify_webhooks: Optional[bool] = None,
) -> Services:
    """Build the service graph for ``backend`` ("memory" or "postgres").

    ``products`` seeds the in-memory catalog. The postgres backend expects
    ``Database.initialize()`` to have run already.
    """
    if backend == "postgres":
        audit_log: IAuditLog = BlackBoxAuditLog()
        lifecycle = OrderLifecycle(
            order_repo=PostgresOrderRepository(),
            inventory=PostgresInventory(),
            audit_log=audit_log,
            notifications=NotificationService(PostgresNotificationStore()),
        )
        idempotency = PostgresIdempotencyStore()
    elif backend == "memory":
        audit_log = InMemoryAuditLog()
        lifecycle = OrderLifecycle(
            order_repo=InMemoryOrderRepository(),
            inventory=InMemoryInventory(products),
            audit_log=audit_log,
            notifications=NotificationService(InMemoryNotificationStore()),
        )
        idempotency = InMemoryIdempotencyStore()
    else:
        raise ValueError(f"Unknown storage backend: {backend}")

    processor = WebhookProcessor(
        idempotency=idempotency,
        dlq=InMemoryDeadLetterQueue(),
        audit_log=audit_log,
    )
    stripe_gateway = StripeGateway(
        lifecycle,
        processor,
        stripe_client=stripe_client,
        webhook_secret=stripe_webhook_secret,
    )
    paypal_gateway = PayPalGateway(
        lifecycle,
        processor,
        client=paypal_client,
        webhook_id=paypal_webhook_id,
        verify_webhooks=paypal_verify_webhooks,
    )

    logger.info("services_built", backend=backend)
    return Services(lifecycle, processor, stripe_gateway, paypal_gateway)
