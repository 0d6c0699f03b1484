import asyncio

import pytest

from boutique.audit import AuditEventType
from boutique.errors import (
    ConcurrentUpdateError,
    InsufficientStockError,
    InvalidOrderError,
    InvalidTransitionError,
    OrderNotFoundError,
    ProductNotFoundError,
)
from boutique.orders.inventory import InMemoryInventory
from boutique.orders.models import (
    OrderStatus,
    PaymentCheck,
    PaymentProvider,
    PaymentResult,
    PaymentState,
)
from boutique.orders.repository import InMemoryOrderRepository
from boutique.orders.service import OrderLifecycle


def stripe_result(reference="cs_1", capture_id="pi_1", amount=None) -> PaymentResult:
    return PaymentResult(
        provider=PaymentProvider.STRIPE,
        reference=reference,
        capture_id=capture_id,
        status="paid",
        amount_cents=amount,
    )


def denied(reference="cs_1", reason="card_declined") -> PaymentResult:
    return PaymentResult(
        provider=PaymentProvider.STRIPE,
        reference=reference,
        status="failed",
        error_message=reason,
    )


async def place(lifecycle, address, lines=None, method="stripe", user_id="user-1"):
    lines = lines or [{"product_id": "shirt", "qty": 2}]
    return await lifecycle.create_order(user_id, lines, address, method)


async def audit_types(lifecycle, order_id):
    return [e.event_type for e in await lifecycle.get_audit_trail(order_id)]


# =============================================================================
# CREATION
# =============================================================================

async def test_create_order_prices_from_catalog(lifecycle, address):
    order = await place(lifecycle, address, [{"product_id": "shirt", "qty": 2}, {"product_id": "scarf", "qty": 1}])

    assert order.status == OrderStatus.CREATED
    assert [i.unit_price_cents for i in order.items] == [2500, 1000]
    assert order.items[0].name == "Linen Shirt"
    assert order.items_price_cents == 6000
    assert order.total_price_cents == 7600
    assert order.payment_method == PaymentProvider.STRIPE
    assert not order.is_paid
    assert await audit_types(lifecycle, order.order_id) == [AuditEventType.ORDER_CREATED]


async def test_create_order_does_not_reserve_stock(lifecycle, address):
    await place(lifecycle, address)
    assert (await lifecycle.inventory.get_product("shirt")).count_in_stock == 5


async def test_create_order_sends_order_placed_notification(lifecycle, address):
    order = await place(lifecycle, address)
    notes = await lifecycle.notifications.list_for_user("user-1")
    assert len(notes) == 1
    assert notes[0].title == "Order Placed Successfully"
    assert order.order_id in notes[0].message


async def test_create_order_validation(lifecycle, address):
    with pytest.raises(InvalidOrderError):
        await lifecycle.create_order("user-1", [], address, "stripe")
    with pytest.raises(InvalidOrderError):
        await lifecycle.create_order("user-1", [{"product_id": "shirt", "qty": 1}], address, "bitcoin")
    with pytest.raises(InvalidOrderError):
        await lifecycle.create_order(
            "user-1", [{"product_id": "shirt", "qty": 1}], {"address": "", "city": "x"}, "stripe"
        )
    with pytest.raises(InvalidOrderError):
        await lifecycle.create_order("user-1", [{"product_id": "shirt", "qty": 0}], address, "stripe")
    with pytest.raises(ProductNotFoundError):
        await lifecycle.create_order("user-1", [{"product_id": "ghost", "qty": 1}], address, "stripe")
    with pytest.raises(InsufficientStockError):
        await lifecycle.create_order("user-1", [{"product_id": "scarf", "qty": 2}], address, "stripe")


async def test_payment_method_is_case_insensitive(lifecycle, address):
    order = await place(lifecycle, address, method="PayPal")
    assert order.payment_method == PaymentProvider.PAYPAL


# =============================================================================
# PAYMENT
# =============================================================================

async def test_confirm_payment_commits_stock_once(lifecycle, address):
    order = await place(lifecycle, address)
    await lifecycle.start_checkout(order.order_id, PaymentProvider.STRIPE, "cs_1")

    outcome = await lifecycle.confirm_payment(order.order_id, stripe_result(amount=order.total_price_cents))

    assert outcome.changed
    assert outcome.order.status == OrderStatus.PAID
    assert outcome.order.stock_committed
    assert outcome.order.paid_at is not None
    assert outcome.order.previous_status == OrderStatus.AWAITING_PAYMENT
    assert (await lifecycle.inventory.get_product("shirt")).count_in_stock == 3

    again = await lifecycle.confirm_payment(order.order_id, stripe_result(amount=order.total_price_cents))
    assert not again.changed
    assert again.reason == "already_paid"
    assert (await lifecycle.inventory.get_product("shirt")).count_in_stock == 3

    types = await audit_types(lifecycle, order.order_id)
    assert types.count(AuditEventType.PAYMENT_CONFIRMED) == 1
    assert types.count(AuditEventType.STOCK_COMMITTED) == 1


async def test_webhook_and_poll_race_decrements_once(lifecycle, address):
    order = await place(lifecycle, address)
    await lifecycle.start_checkout(order.order_id, PaymentProvider.STRIPE, "cs_1")

    outcomes = await asyncio.gather(*[
        lifecycle.confirm_payment(order.order_id, stripe_result(), source=source)
        for source in ("stripe_webhook", "poll", "stripe_webhook", "poll", "reconciler")
    ])

    assert sum(1 for o in outcomes if o.changed) == 1
    assert (await lifecycle.inventory.get_product("shirt")).count_in_stock == 3
    final = await lifecycle.get_order(order.order_id)
    assert final.status == OrderStatus.PAID
    assert final.stock_committed

    notes = await lifecycle.notifications.list_for_user("user-1")
    assert sum(1 for n in notes if n.title == "Payment Successful") == 1


async def test_two_lifecycles_sharing_storage_still_decrement_once(products, address):
    # Two API processes: separate in-process locks, shared order table and stock ledger
    orders = InMemoryOrderRepository()
    inventory = InMemoryInventory(products)
    first = OrderLifecycle(order_repo=orders, inventory=inventory)
    second = OrderLifecycle(order_repo=orders, inventory=inventory)

    order = await place(first, address)
    await first.start_checkout(order.order_id, PaymentProvider.STRIPE, "cs_1")

    outcomes = await asyncio.gather(
        first.confirm_payment(order.order_id, stripe_result(), source="stripe_webhook"),
        second.confirm_payment(order.order_id, stripe_result(), source="poll"),
    )

    assert sum(1 for o in outcomes if o.changed) == 1
    assert (await inventory.get_product("shirt")).count_in_stock == 3


async def test_capture_before_checkout_record(lifecycle, address):
    # Webhook beat the start_checkout write
    order = await place(lifecycle, address)
    outcome = await lifecycle.confirm_payment(order.order_id, stripe_result())
    assert outcome.order.status == OrderStatus.PAID
    assert outcome.order.previous_status == OrderStatus.CREATED
    assert outcome.order.payment_reference == "cs_1"


async def test_late_denial_after_payment_is_ignored(lifecycle, address):
    order = await place(lifecycle, address)
    await lifecycle.start_checkout(order.order_id, PaymentProvider.STRIPE, "cs_1")
    await lifecycle.confirm_payment(order.order_id, stripe_result())

    outcome = await lifecycle.fail_payment(order.order_id, denied())

    assert not outcome.changed
    assert outcome.reason == "stale_denial"
    assert outcome.order.status == OrderStatus.PAID


async def test_denial_then_successful_retry(lifecycle, address):
    order = await place(lifecycle, address)
    await lifecycle.start_checkout(order.order_id, PaymentProvider.STRIPE, "cs_1")

    failed = await lifecycle.fail_payment(order.order_id, denied())
    assert failed.changed
    assert failed.order.status == OrderStatus.PAYMENT_FAILED
    assert failed.order.payment_result.error_message == "card_declined"
    assert (await lifecycle.inventory.get_product("shirt")).count_in_stock == 5

    await lifecycle.start_checkout(order.order_id, PaymentProvider.PAYPAL, "PP-1")
    paid = await lifecycle.confirm_payment(
        order.order_id,
        PaymentResult(provider=PaymentProvider.PAYPAL, reference="PP-1", capture_id="CAP-1", status="COMPLETED"),
    )
    assert paid.order.status == OrderStatus.PAID
    assert paid.order.payment_provider == PaymentProvider.PAYPAL
    assert (await lifecycle.inventory.get_product("shirt")).count_in_stock == 3

    notes = await lifecycle.notifications.list_for_user("user-1")
    assert {n.title for n in notes} == {"Order Placed Successfully", "Payment Failed", "Payment Successful"}


async def test_denial_for_replaced_checkout_is_stale(lifecycle, address):
    order = await place(lifecycle, address)
    await lifecycle.start_checkout(order.order_id, PaymentProvider.STRIPE, "cs_old")
    await lifecycle.start_checkout(order.order_id, PaymentProvider.STRIPE, "cs_new")

    outcome = await lifecycle.fail_payment(order.order_id, denied(reference="cs_old", reason="expired"))

    assert not outcome.changed
    assert outcome.reason == "superseded_checkout"
    assert outcome.order.status == OrderStatus.AWAITING_PAYMENT


async def test_duplicate_capture_is_audited(lifecycle, address):
    order = await place(lifecycle, address)
    await lifecycle.confirm_payment(order.order_id, stripe_result(reference="cs_1", capture_id="pi_1"))

    outcome = await lifecycle.confirm_payment(order.order_id, stripe_result(reference="cs_2", capture_id="pi_2"))

    assert not outcome.changed
    assert AuditEventType.PAYMENT_DUPLICATE in await audit_types(lifecycle, order.order_id)
    assert (await lifecycle.inventory.get_product("shirt")).count_in_stock == 3


async def test_amount_mismatch_is_audited_but_payment_stands(lifecycle, address):
    order = await place(lifecycle, address)
    outcome = await lifecycle.confirm_payment(order.order_id, stripe_result(amount=1))

    assert outcome.order.status == OrderStatus.PAID
    entries = await lifecycle.get_audit_trail(order.order_id)
    mismatch = [e for e in entries if e.event_type == AuditEventType.PAYMENT_AMOUNT_MISMATCH]
    assert len(mismatch) == 1
    assert mismatch[0].metadata == {"expected_cents": order.total_price_cents, "received_cents": 1}


async def test_confirm_unknown_order(lifecycle):
    with pytest.raises(OrderNotFoundError):
        await lifecycle.confirm_payment("missing", stripe_result())


# =============================================================================
# STOCK SHORTFALL
# =============================================================================

async def test_shortfall_keeps_order_paid_and_retry_after_restock(lifecycle, address):
    first = await place(lifecycle, address, [{"product_id": "scarf", "qty": 1}], user_id="user-1")
    second = await place(lifecycle, address, [{"product_id": "scarf", "qty": 1}], user_id="user-2")

    await lifecycle.confirm_payment(first.order_id, stripe_result(reference="cs_a"))
    short = await lifecycle.confirm_payment(second.order_id, stripe_result(reference="cs_b"))

    assert short.order.status == OrderStatus.PAID
    assert not short.order.stock_committed
    assert short.order.stock_shortfall == [
        {"product_id": "scarf", "name": "Silk Scarf", "requested": 1, "available": 0}
    ]
    entries = await lifecycle.get_audit_trail(second.order_id)
    shortfall = [e for e in entries if e.event_type == AuditEventType.STOCK_SHORTFALL]
    assert shortfall[0].severity == "CRITICAL"

    still_short = await lifecycle.retry_stock_commit(second.order_id)
    assert not still_short.changed

    await lifecycle.inventory.restock("scarf", 3)
    committed = await lifecycle.retry_stock_for_product("scarf")

    assert committed == [second.order_id]
    final = await lifecycle.get_order(second.order_id)
    assert final.stock_committed
    assert final.stock_shortfall == []
    assert (await lifecycle.inventory.get_product("scarf")).count_in_stock == 2


async def test_retry_stock_commit_requires_payment(lifecycle, address):
    order = await place(lifecycle, address)
    with pytest.raises(InvalidTransitionError):
        await lifecycle.retry_stock_commit(order.order_id)


async def test_retry_stock_commit_on_committed_order_is_noop(lifecycle, address):
    order = await place(lifecycle, address)
    await lifecycle.confirm_payment(order.order_id, stripe_result())
    outcome = await lifecycle.retry_stock_commit(order.order_id)
    assert not outcome.changed
    assert outcome.reason == "already_committed"


# =============================================================================
# DELIVERY
# =============================================================================

async def test_mark_delivered(lifecycle, address):
    order = await place(lifecycle, address)
    await lifecycle.confirm_payment(order.order_id, stripe_result())

    delivered = await lifecycle.mark_delivered(order.order_id)
    assert delivered.changed
    assert delivered.order.status == OrderStatus.DELIVERED
    assert delivered.order.delivered_at is not None
    assert delivered.order.is_paid

    again = await lifecycle.mark_delivered(order.order_id)
    assert not again.changed
    assert again.order.delivered_at == delivered.order.delivered_at


async def test_cannot_deliver_unpaid_order(lifecycle, address):
    order = await place(lifecycle, address)
    with pytest.raises(InvalidTransitionError):
        await lifecycle.mark_delivered(order.order_id)


async def test_late_capture_after_delivery_is_noop(lifecycle, address):
    order = await place(lifecycle, address)
    await lifecycle.confirm_payment(order.order_id, stripe_result())
    await lifecycle.mark_delivered(order.order_id)

    outcome = await lifecycle.confirm_payment(order.order_id, stripe_result())
    assert not outcome.changed
    assert outcome.order.status == OrderStatus.DELIVERED


# =============================================================================
# POLLING
# =============================================================================

class StubGateway:
    provider = PaymentProvider.STRIPE

    def __init__(self, check: PaymentCheck):
        self.check = check
        self.calls = 0

    async def create_checkout(self, order, customer_email=None):
        raise NotImplementedError

    async def fetch_payment(self, order):
        self.calls += 1
        return self.check


async def test_refresh_payment_applies_provider_state(lifecycle, address):
    order = await place(lifecycle, address)
    await lifecycle.start_checkout(order.order_id, PaymentProvider.STRIPE, "cs_1")

    pending = StubGateway(PaymentCheck(state=PaymentState.PENDING, result=stripe_result()))
    refreshed = await lifecycle.refresh_payment(order.order_id, {PaymentProvider.STRIPE: pending})
    assert refreshed.status == OrderStatus.AWAITING_PAYMENT

    completed = StubGateway(PaymentCheck(state=PaymentState.COMPLETED, result=stripe_result()))
    refreshed = await lifecycle.refresh_payment(order.order_id, {PaymentProvider.STRIPE: completed})
    assert refreshed.status == OrderStatus.PAID
    assert refreshed.stock_committed

    # Paid orders are answered without asking the provider
    await lifecycle.refresh_payment(order.order_id, {PaymentProvider.STRIPE: completed})
    assert completed.calls == 1


async def test_refresh_payment_failed(lifecycle, address):
    order = await place(lifecycle, address)
    await lifecycle.start_checkout(order.order_id, PaymentProvider.STRIPE, "cs_1")

    gateway = StubGateway(PaymentCheck(state=PaymentState.FAILED, result=denied(reason="expired")))
    refreshed = await lifecycle.refresh_payment(order.order_id, {PaymentProvider.STRIPE: gateway})
    assert refreshed.status == OrderStatus.PAYMENT_FAILED


async def test_refresh_before_checkout_does_not_call_provider(lifecycle, address):
    order = await place(lifecycle, address)
    gateway = StubGateway(PaymentCheck(state=PaymentState.COMPLETED, result=stripe_result()))
    refreshed = await lifecycle.refresh_payment(order.order_id, {PaymentProvider.STRIPE: gateway})
    assert refreshed.status == OrderStatus.CREATED
    assert gateway.calls == 0


# =============================================================================
# CONCURRENCY GUARD
# =============================================================================

class FlakyRepository(InMemoryOrderRepository):
    """Fails the first N saves as if another process had written first"""

    def __init__(self, conflicts: int):
        super().__init__()
        self.conflicts = conflicts

    async def save(self, order, expected_version):
        if self.conflicts:
            self.conflicts -= 1
            raise ConcurrentUpdateError(order.order_id, expected_version)
        return await super().save(order, expected_version)


async def test_save_is_retried_on_version_conflict(products, address):
    lifecycle = OrderLifecycle(order_repo=FlakyRepository(conflicts=2), inventory=InMemoryInventory(products))
    order = await place(lifecycle, address)

    outcome = await lifecycle.confirm_payment(order.order_id, stripe_result())
    assert outcome.order.status == OrderStatus.PAID


async def test_save_gives_up_after_repeated_conflicts(products, address):
    lifecycle = OrderLifecycle(order_repo=FlakyRepository(conflicts=3), inventory=InMemoryInventory(products))
    order = await place(lifecycle, address)

    with pytest.raises(ConcurrentUpdateError):
        await lifecycle.confirm_payment(order.order_id, stripe_result())
    assert (await lifecycle.inventory.get_product("shirt")).count_in_stock == 5


async def test_repository_rejects_stale_version(lifecycle, address):
    order = await place(lifecycle, address)
    paid = order.transition_to(OrderStatus.PAID)
    await lifecycle.orders.save(paid, expected_version=order.version)

    with pytest.raises(ConcurrentUpdateError):
        await lifecycle.orders.save(order.transition_to(OrderStatus.PAYMENT_FAILED), expected_version=order.version)


# =============================================================================
# ADMIN
# =============================================================================

async def test_delete_order(lifecycle, address):
    order = await place(lifecycle, address)
    await lifecycle.delete_order(order.order_id)
    with pytest.raises(OrderNotFoundError):
        await lifecycle.get_order(order.order_id)
    entries = await lifecycle.audit.get_by_correlation_id(order.correlation_id)
    assert entries[-1].event_type == AuditEventType.ORDER_DELETED


async def test_listing(lifecycle, address):
    first = await place(lifecycle, address, user_id="user-1")
    second = await place(lifecycle, address, user_id="user-2")
    mine = await lifecycle.list_orders_for_user("user-1")
    assert [o.order_id for o in mine] == [first.order_id]
    assert {o.order_id for o in await lifecycle.list_orders()} == {first.order_id, second.order_id}
