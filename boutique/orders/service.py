"""
OrderLifecycle: the one place an order changes state.

Webhooks (Stripe, PayPal), user polling and the reconciliation loop all end
up here. Two guards make the racing callers safe:

- a per-order asyncio.Lock serialises work on one order inside a process
- ``IOrderRepository.save`` is a version compare-and-set, so across
  processes exactly one writer moves an order into PAID

Stock is taken only by the writer that moved the order into PAID, through
the order-keyed stock ledger.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Callable, Mapping, Optional, Union

import structlog
from pydantic import BaseModel, Field, ValidationError

from boutique.audit import AuditEventType, AuditLogEntry, IAuditLog, InMemoryAuditLog
from boutique.errors import (
    ConcurrentUpdateError,
    InsufficientStockError,
    InvalidOrderError,
    InvalidTransitionError,
    OrderNotFoundError,
    PaymentProviderError,
    ProductNotFoundError,
)
from boutique.notifications import NotificationService
from boutique.orders.inventory import IInventory, InMemoryInventory, aggregate_quantities
from boutique.orders.models import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentCheck,
    PaymentProvider,
    PaymentResult,
    PaymentState,
    ShippingAddress,
    calculate_prices,
    utcnow,
)
from boutique.orders.repository import IOrderRepository, InMemoryOrderRepository
from boutique.orders.state_machine import LifecycleEvent, Transition, enters_paid, plan_transition


class OrderLineRequest(BaseModel):
    """A cart line as the client sends it. Prices always come from the catalog."""
    product_id: str
    qty: int = Field(..., ge=1)


class TransitionOutcome(BaseModel):
    order: Order
    changed: bool
    transition: Optional[Transition] = None
    reason: Optional[str] = None


class CheckoutResult(BaseModel):
    order_id: str
    provider: PaymentProvider
    reference: str  # Stripe checkout session id / PayPal order id
    url: str


class IPaymentGateway(ABC):
    """What the lifecycle needs from a provider adapter"""

    provider: PaymentProvider

    @abstractmethod
    async def create_checkout(self, order: Order, customer_email: Optional[str] = None) -> CheckoutResult:
        pass

    @abstractmethod
    async def fetch_payment(self, order: Order) -> PaymentCheck:
        pass


class OrderLifecycle:
    """
    Order state transitions with audit, stock and notifications.

    Example:
        lifecycle = OrderLifecycle(inventory=InMemoryInventory(products))
        order = await lifecycle.create_order(user_id, lines, address, "stripe")
        await lifecycle.start_checkout(order.order_id, PaymentProvider.STRIPE, session.id)
        await lifecycle.confirm_payment(order.order_id, result, source="webhook")
    """

    MAX_SAVE_ATTEMPTS = 3

    def __init__(
        self,
        order_repo: Optional[IOrderRepository] = None,
        inventory: Optional[IInventory] = None,
        audit_log: Optional[IAuditLog] = None,
        notifications: Optional[NotificationService] = None,
    ):
        self.orders = order_repo or InMemoryOrderRepository()
        self.inventory = inventory or InMemoryInventory()
        self.audit = audit_log or InMemoryAuditLog()
        self.notifications = notifications or NotificationService()

        self._order_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._order_locks_mutex = asyncio.Lock()

        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        return self._base_logger.bind(
            component="order_lifecycle",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    async def _get_order_lock(self, order_id: str) -> asyncio.Lock:
        async with self._order_locks_mutex:
            return self._order_locks[order_id]

    async def _emit_audit(
        self,
        event_type: AuditEventType,
        order: Order,
        actor: str = "system",
        previous_state: Optional[dict] = None,
        new_state: Optional[dict] = None,
        metadata: Optional[dict] = None,
        severity: str = "INFO",
        entity_type: str = "order",
    ):
        await self.audit.append(AuditLogEntry(
            correlation_id=order.correlation_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=order.order_id,
            previous_state=previous_state,
            new_state=new_state,
            metadata=metadata or {},
            actor=actor,
            severity=severity,
        ))

    async def _load(self, order_id: str) -> Order:
        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def _mutate(
        self,
        order_id: str,
        build: Callable[[Order], Optional[Order]],
        log,
    ) -> tuple[Order, Optional[Order]]:
        """Reload, build the next version and CAS-save it.

        Returns (before, after). ``after`` is None when ``build`` decided
        there is nothing to write.
        """
        expected = None
        for attempt in range(1, self.MAX_SAVE_ATTEMPTS + 1):
            before = await self._load(order_id)
            after = build(before)
            if after is None:
                return before, None
            try:
                return before, await self.orders.save(after, expected_version=before.version)
            except ConcurrentUpdateError:
                expected = before.version
                log.warning("order_version_conflict", order_id=order_id, attempt=attempt)
        raise ConcurrentUpdateError(order_id, expected)

    # =========================================================================
    # CREATION & CHECKOUT
    # =========================================================================

    async def create_order(
        self,
        user_id: str,
        items: list[Union[OrderLineRequest, dict]],
        shipping_address: Union[ShippingAddress, dict],
        payment_method: Union[PaymentProvider, str],
    ) -> Order:
        """
        Price and persist a new order in CREATED.

        Stock is checked but not reserved: it is only taken once the order
        is paid.
        """
        if not items:
            raise InvalidOrderError("No order items")

        try:
            lines = [OrderLineRequest.model_validate(i) if isinstance(i, dict) else i for i in items]
            address = (
                ShippingAddress.model_validate(shipping_address)
                if isinstance(shipping_address, dict)
                else shipping_address
            )
        except ValidationError as e:
            raise InvalidOrderError(
                "Invalid order data",
                e.errors(include_url=False, include_context=False, include_input=False),
            ) from e

        try:
            method = (
                payment_method
                if isinstance(payment_method, PaymentProvider)
                else PaymentProvider(payment_method.strip().lower())
            )
        except (ValueError, AttributeError):
            raise InvalidOrderError(f"Unknown payment method: {payment_method}")

        requested = aggregate_quantities(lines)
        products = await self.inventory.get_products(list(requested))

        shortfalls = []
        for product_id, qty in requested.items():
            product = products.get(product_id)
            if product is None:
                raise ProductNotFoundError(product_id)
            if product.count_in_stock < qty:
                shortfalls.append({
                    "product_id": product_id,
                    "name": product.name,
                    "requested": qty,
                    "available": product.count_in_stock,
                })
        if shortfalls:
            raise InsufficientStockError(shortfalls)

        order_items = [
            OrderItem(
                product_id=line.product_id,
                name=products[line.product_id].name,
                qty=line.qty,
                unit_price_cents=products[line.product_id].price_cents,
                image=products[line.product_id].image,
            )
            for line in lines
        ]
        prices = calculate_prices(order_items)

        transition = plan_transition(None, LifecycleEvent.ORDER_CREATED)
        order = Order(
            user_id=user_id,
            items=order_items,
            shipping_address=address,
            payment_method=method,
            status=transition.target,
            **prices.model_dump(),
        )
        await self.orders.add(order)

        log = self._get_logger(order.correlation_id)
        await self._emit_audit(
            AuditEventType.ORDER_CREATED,
            order,
            actor="user",
            new_state={"status": order.status.value},
            metadata={
                "user_id": user_id,
                "payment_method": method.value,
                "total_price_cents": order.total_price_cents,
                "lines": len(order_items),
            },
        )
        log.info("order_created",
                 order_id=order.order_id,
                 user_id=user_id,
                 total_cents=order.total_price_cents)

        await self.notifications.order_placed(user_id, order.order_id)
        return order

    async def start_checkout(self, order_id: str, provider: PaymentProvider, reference: str) -> Order:
        """Record the provider checkout and move the order to AWAITING_PAYMENT."""
        lock = await self._get_order_lock(order_id)
        async with lock:
            order = await self._load(order_id)
            log = self._get_logger(order.correlation_id)

            def build(current: Order) -> Order:
                transition = plan_transition(current.status, LifecycleEvent.CHECKOUT_STARTED)
                return current.transition_to(
                    transition.target,
                    payment_provider=provider,
                    payment_reference=reference,
                )

            before, after = await self._mutate(order_id, build, log)

            await self._emit_audit(
                AuditEventType.CHECKOUT_STARTED,
                after,
                actor="user",
                previous_state={"status": before.status.value, "reference": before.payment_reference},
                new_state={"status": after.status.value, "reference": reference},
                metadata={"provider": provider.value},
            )
            log.info("checkout_started",
                     order_id=order_id,
                     provider=provider.value,
                     reference=reference)
            return after

    # =========================================================================
    # PAYMENT OUTCOMES
    # =========================================================================

    async def confirm_payment(
        self,
        order_id: str,
        payment_result: PaymentResult,
        source: str = "webhook",
    ) -> TransitionOutcome:
        """
        Apply a completed capture. Safe to call any number of times from any
        number of sources: only the first call that moves the order into
        PAID commits stock and notifies the user.
        """
        lock = await self._get_order_lock(order_id)
        async with lock:
            order = await self._load(order_id)
            log = self._get_logger(order.correlation_id)

            planned: dict[str, Transition] = {}

            def build(current: Order) -> Optional[Order]:
                transition = plan_transition(current.status, LifecycleEvent.CAPTURE_COMPLETED)
                planned["transition"] = transition
                if transition.noop:
                    return None
                return current.transition_to(
                    transition.target,
                    payment_provider=payment_result.provider,
                    payment_reference=payment_result.reference or current.payment_reference,
                    payment_result=payment_result,
                    paid_at=utcnow(),
                )

            before, after = await self._mutate(order_id, build, log)
            transition = planned["transition"]

            if after is None:
                await self._check_duplicate_capture(before, payment_result, source, log)
                log.info("payment_confirmation_noop",
                         order_id=order_id,
                         status=before.status.value,
                         reason=transition.reason,
                         source=source)
                return TransitionOutcome(
                    order=before, changed=False, transition=transition, reason=transition.reason
                )

            await self._emit_audit(
                AuditEventType.PAYMENT_CONFIRMED,
                after,
                actor=source,
                previous_state={"status": before.status.value},
                new_state={"status": after.status.value},
                metadata={
                    "provider": payment_result.provider.value,
                    "reference": payment_result.reference,
                    "capture_id": payment_result.capture_id,
                    "amount_cents": payment_result.amount_cents,
                },
                entity_type="payment",
            )
            log.info("payment_confirmed",
                     order_id=order_id,
                     provider=payment_result.provider.value,
                     source=source,
                     from_status=before.status.value)

            if (
                payment_result.amount_cents is not None
                and payment_result.amount_cents != after.total_price_cents
            ):
                log.warning("amount_mismatch",
                            order_id=order_id,
                            expected=after.total_price_cents,
                            received=payment_result.amount_cents)
                await self._emit_audit(
                    AuditEventType.PAYMENT_AMOUNT_MISMATCH,
                    after,
                    actor=source,
                    metadata={
                        "expected_cents": after.total_price_cents,
                        "received_cents": payment_result.amount_cents,
                    },
                    severity="WARNING",
                    entity_type="payment",
                )

            if enters_paid(transition):
                after = await self._commit_stock(after, log)

            await self.notifications.payment_processed(
                after.user_id,
                order_id,
                payment_result.amount_cents if payment_result.amount_cents is not None else after.total_price_cents,
            )
            return TransitionOutcome(order=after, changed=True, transition=transition)

    async def _check_duplicate_capture(self, order: Order, incoming: PaymentResult, source: str, log):
        previous = order.payment_result
        if previous is None or not order.is_paid:
            return

        if previous.capture_id and incoming.capture_id:
            duplicate = previous.capture_id != incoming.capture_id
        else:
            duplicate = bool(
                previous.reference and incoming.reference and previous.reference != incoming.reference
            )
        if not duplicate:
            return

        log.warning("duplicate_capture_detected",
                    order_id=order.order_id,
                    existing_reference=previous.reference,
                    existing_capture=previous.capture_id,
                    incoming_reference=incoming.reference,
                    incoming_capture=incoming.capture_id,
                    provider=incoming.provider.value)
        await self._emit_audit(
            AuditEventType.PAYMENT_DUPLICATE,
            order,
            actor=source,
            metadata={
                "existing": previous.model_dump(mode="json"),
                "incoming": incoming.model_dump(mode="json"),
            },
            severity="WARNING",
            entity_type="payment",
        )

    async def fail_payment(
        self,
        order_id: str,
        payment_result: PaymentResult,
        source: str = "webhook",
    ) -> TransitionOutcome:
        """Apply a denied capture. Never moves an order back out of PAID or DELIVERED."""
        lock = await self._get_order_lock(order_id)
        async with lock:
            order = await self._load(order_id)
            log = self._get_logger(order.correlation_id)

            planned: dict[str, Transition] = {}

            def build(current: Order) -> Optional[Order]:
                transition = plan_transition(current.status, LifecycleEvent.CAPTURE_DENIED)
                planned["transition"] = transition
                if transition.noop:
                    return None
                # A denial for a checkout the user has since replaced is stale
                if (
                    current.payment_reference
                    and payment_result.reference
                    and current.payment_reference != payment_result.reference
                ):
                    planned["transition"] = transition.model_copy(
                        update={"noop": True, "target": current.status, "reason": "superseded_checkout"}
                    )
                    return None
                return current.transition_to(transition.target, payment_result=payment_result)

            before, after = await self._mutate(order_id, build, log)
            transition = planned["transition"]

            if after is None:
                log.info("payment_failure_noop",
                         order_id=order_id,
                         status=before.status.value,
                         reason=transition.reason,
                         source=source)
                return TransitionOutcome(
                    order=before, changed=False, transition=transition, reason=transition.reason
                )

            await self._emit_audit(
                AuditEventType.PAYMENT_FAILED,
                after,
                actor=source,
                previous_state={"status": before.status.value},
                new_state={"status": after.status.value},
                metadata={
                    "provider": payment_result.provider.value,
                    "reference": payment_result.reference,
                    "error": payment_result.error_message,
                },
                severity="WARNING",
                entity_type="payment",
            )
            log.warning("payment_failed",
                        order_id=order_id,
                        provider=payment_result.provider.value,
                        error=payment_result.error_message,
                        source=source)

            await self.notifications.payment_failed(after.user_id, order_id, payment_result.error_message)
            return TransitionOutcome(order=after, changed=True, transition=transition)

    # =========================================================================
    # STOCK
    # =========================================================================

    async def _commit_stock(self, order: Order, log) -> Order:
        """Take stock for a PAID order. Caller holds the order lock."""
        try:
            result = await self.inventory.commit_order_stock(order.order_id, order.items)
        except InsufficientStockError as e:
            log.critical("stock_shortfall",
                         order_id=order.order_id,
                         shortfalls=e.shortfalls)
            _, updated = await self._mutate(
                order.order_id,
                lambda current: current.with_changes(stock_shortfall=e.shortfalls),
                log,
            )
            await self._emit_audit(
                AuditEventType.STOCK_SHORTFALL,
                updated,
                metadata={"shortfalls": e.shortfalls},
                severity="CRITICAL",
                entity_type="stock",
            )
            return updated

        _, updated = await self._mutate(
            order.order_id,
            lambda current: current.with_changes(stock_committed=True, stock_shortfall=[]),
            log,
        )
        await self._emit_audit(
            AuditEventType.STOCK_COMMITTED,
            updated,
            metadata={
                "decremented": result.decremented,
                "already_committed": result.already_committed,
            },
            entity_type="stock",
        )
        log.info("order_stock_committed",
                 order_id=order.order_id,
                 already_committed=result.already_committed)
        return updated

    async def retry_stock_commit(self, order_id: str) -> TransitionOutcome:
        """Try again to take stock for a paid order that came up short."""
        lock = await self._get_order_lock(order_id)
        async with lock:
            order = await self._load(order_id)
            if not order.is_paid:
                raise InvalidTransitionError(order.status.value, "stock_commit")
            if order.stock_committed:
                return TransitionOutcome(order=order, changed=False, reason="already_committed")

            log = self._get_logger(order.correlation_id)
            log.info("stock_commit_retry", order_id=order_id)
            updated = await self._commit_stock(order, log)
            return TransitionOutcome(order=updated, changed=updated.stock_committed)

    async def retry_stock_for_product(self, product_id: str, limit: int = 100) -> list[str]:
        """After a restock, retry every short paid order that wants ``product_id``.

        Returns the ids of orders whose stock is now committed.
        """
        committed = []
        for order in await self.orders.list_uncommitted_paid(limit=limit):
            if not any(item.product_id == product_id for item in order.items):
                continue
            outcome = await self.retry_stock_commit(order.order_id)
            if outcome.order.stock_committed:
                committed.append(order.order_id)
        return committed

    # =========================================================================
    # FULFILLMENT
    # =========================================================================

    async def mark_delivered(self, order_id: str, actor: str = "admin") -> TransitionOutcome:
        lock = await self._get_order_lock(order_id)
        async with lock:
            order = await self._load(order_id)
            log = self._get_logger(order.correlation_id)

            planned: dict[str, Transition] = {}

            def build(current: Order) -> Optional[Order]:
                transition = plan_transition(current.status, LifecycleEvent.DELIVERY_CONFIRMED)
                planned["transition"] = transition
                if transition.noop:
                    return None
                return current.transition_to(transition.target, delivered_at=utcnow())

            before, after = await self._mutate(order_id, build, log)
            transition = planned["transition"]

            if after is None:
                return TransitionOutcome(
                    order=before, changed=False, transition=transition, reason=transition.reason
                )

            await self._emit_audit(
                AuditEventType.ORDER_DELIVERED,
                after,
                actor=actor,
                previous_state={"status": before.status.value},
                new_state={"status": after.status.value},
            )
            log.info("order_delivered", order_id=order_id, actor=actor)

            await self.notifications.order_delivered(after.user_id, order_id)
            return TransitionOutcome(order=after, changed=True, transition=transition)

    # =========================================================================
    # POLLING
    # =========================================================================

    async def refresh_payment(
        self,
        order_id: str,
        gateways: Mapping[PaymentProvider, IPaymentGateway],
    ) -> Order:
        """
        Ask the order's provider what happened and apply the answer.

        This is the user-side "is my order paid yet?" path, and it races
        the provider webhooks. Both land in confirm_payment/fail_payment so
        whichever arrives second is a no-op.
        """
        order = await self._load(order_id)
        if order.is_paid or order.payment_reference is None:
            return order

        provider = order.payment_provider or order.payment_method
        gateway = gateways.get(provider)
        if gateway is None:
            raise PaymentProviderError(f"No gateway configured for {provider.value}")

        log = self._get_logger(order.correlation_id)
        check = await gateway.fetch_payment(order)
        log.info("payment_polled", order_id=order_id, provider=provider.value, state=check.state.value)

        if check.state == PaymentState.COMPLETED:
            return (await self.confirm_payment(order_id, check.result, source="poll")).order
        if check.state == PaymentState.FAILED and order.status != OrderStatus.PAYMENT_FAILED:
            return (await self.fail_payment(order_id, check.result, source="poll")).order
        return order

    # =========================================================================
    # QUERIES & ADMIN
    # =========================================================================

    async def get_order(self, order_id: str) -> Order:
        return await self._load(order_id)

    async def list_orders_for_user(self, user_id: str) -> list[Order]:
        return await self.orders.list_by_user(user_id)

    async def list_orders(self) -> list[Order]:
        return await self.orders.list_all()

    async def delete_order(self, order_id: str, actor: str = "admin") -> None:
        lock = await self._get_order_lock(order_id)
        async with lock:
            order = await self._load(order_id)
            await self.orders.delete(order_id)
            await self._emit_audit(
                AuditEventType.ORDER_DELETED,
                order,
                actor=actor,
                previous_state={"status": order.status.value},
            )
            self._get_logger(order.correlation_id).info("order_deleted", order_id=order_id, actor=actor)

        async with self._order_locks_mutex:
            self._order_locks.pop(order_id, None)

    async def get_audit_trail(self, order_id: str) -> list[AuditLogEntry]:
        order = await self._load(order_id)
        return await self.audit.get_by_correlation_id(order.correlation_id)
