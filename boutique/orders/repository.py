"""
Order persistence.

``save`` is an optimistic compare-and-set on ``version``: whoever races to
move an order out of a state, only one writer wins and the others get
ConcurrentUpdateError and must reload.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from boutique.database import Database, decode_json
from boutique.errors import ConcurrentUpdateError
from boutique.orders.models import Order, OrderStatus


class IOrderRepository(ABC):
    """Order repository interface"""

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def add(self, order: Order) -> Order:
        pass

    @abstractmethod
    async def save(self, order: Order, expected_version: int) -> Order:
        """Persist ``order`` only if the stored copy is still at ``expected_version``."""
        pass

    @abstractmethod
    async def delete(self, order_id: str) -> bool:
        pass

    @abstractmethod
    async def list_by_user(self, user_id: str) -> list[Order]:
        pass

    @abstractmethod
    async def list_all(self) -> list[Order]:
        pass

    @abstractmethod
    async def get_by_payment_reference(self, reference: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def list_stale(self, status: OrderStatus, older_than: datetime, limit: int = 10) -> list[Order]:
        """Orders in ``status`` untouched since ``older_than``.

        Never-reconciled orders come first, then the least recently
        reconciled, so a cycle does not keep re-polling the same batch.
        """
        pass

    @abstractmethod
    async def mark_reconciled(self, order_id: str, at: datetime) -> None:
        """Record a reconciliation attempt. Does not bump ``version``."""
        pass

    @abstractmethod
    async def list_uncommitted_paid(self, limit: int = 10) -> list[Order]:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemoryOrderRepository(IOrderRepository):
    """Thread-safe in-memory order repository"""

    def __init__(self):
        self._orders: dict[str, Order] = {}
        self._reconciled_at: dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    async def get(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            return self._orders.get(order_id)

    async def add(self, order: Order) -> Order:
        async with self._lock:
            self._orders[order.order_id] = order
            return order

    async def save(self, order: Order, expected_version: int) -> Order:
        async with self._lock:
            current = self._orders.get(order.order_id)
            if current is None or current.version != expected_version:
                raise ConcurrentUpdateError(order.order_id, expected_version)
            self._orders[order.order_id] = order
            return order

    async def delete(self, order_id: str) -> bool:
        async with self._lock:
            self._reconciled_at.pop(order_id, None)
            return self._orders.pop(order_id, None) is not None

    async def list_by_user(self, user_id: str) -> list[Order]:
        async with self._lock:
            orders = [o for o in self._orders.values() if o.user_id == user_id]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    async def list_all(self) -> list[Order]:
        async with self._lock:
            orders = list(self._orders.values())
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    async def get_by_payment_reference(self, reference: str) -> Optional[Order]:
        async with self._lock:
            for order in self._orders.values():
                if order.payment_reference == reference:
                    return order
            return None

    async def list_stale(self, status: OrderStatus, older_than: datetime, limit: int = 10) -> list[Order]:
        async with self._lock:
            stale = [
                o for o in self._orders.values()
                if o.status == status and o.updated_at < older_than
            ]
            reconciled = dict(self._reconciled_at)

        def key(order: Order):
            last = reconciled.get(order.order_id)
            return (last is not None, last or order.updated_at, order.updated_at)

        return sorted(stale, key=key)[:limit]

    async def mark_reconciled(self, order_id: str, at: datetime) -> None:
        async with self._lock:
            if order_id in self._orders:
                self._reconciled_at[order_id] = at

    async def list_uncommitted_paid(self, limit: int = 10) -> list[Order]:
        async with self._lock:
            pending = [
                o for o in self._orders.values()
                if o.is_paid and not o.stock_committed
            ]
        return sorted(pending, key=lambda o: o.updated_at)[:limit]


# =============================================================================
# POSTGRES IMPLEMENTATION
# =============================================================================

_COLUMNS = (
    "id, user_id, status, previous_status, payment_method, payment_provider, "
    "payment_reference, payment_result, items, shipping_address, items_price_cents, "
    "tax_price_cents, shipping_price_cents, total_price_cents, currency, stock_committed, "
    "stock_shortfall, correlation_id, version, created_at, updated_at, paid_at, delivered_at"
)


def _to_row(order: Order) -> list:
    data = order.model_dump(mode="json")
    return [
        order.order_id,
        order.user_id,
        order.status.value,
        order.previous_status.value if order.previous_status else None,
        order.payment_method.value,
        order.payment_provider.value if order.payment_provider else None,
        order.payment_reference,
        json.dumps(data["payment_result"]) if order.payment_result else None,
        json.dumps(data["items"]),
        json.dumps(data["shipping_address"]),
        order.items_price_cents,
        order.tax_price_cents,
        order.shipping_price_cents,
        order.total_price_cents,
        order.currency,
        order.stock_committed,
        json.dumps(order.stock_shortfall),
        order.correlation_id,
        order.version,
        order.created_at,
        order.updated_at,
        order.paid_at,
        order.delivered_at,
    ]


def _from_row(row) -> Order:
    data = dict(row)
    data["order_id"] = data.pop("id")
    for key in ("payment_result", "items", "shipping_address", "stock_shortfall"):
        data[key] = decode_json(data[key])
    return Order.model_validate(data)


class PostgresOrderRepository(IOrderRepository):
    """Orders table backed by the shared asyncpg pool"""

    async def get(self, order_id: str) -> Optional[Order]:
        row = await Database.fetch_one(f"SELECT {_COLUMNS} FROM orders WHERE id = $1", order_id)
        return _from_row(row) if row else None

    async def add(self, order: Order) -> Order:
        placeholders = ", ".join(f"${i}" for i in range(1, 24))
        await Database.execute(
            f"INSERT INTO orders ({_COLUMNS}) VALUES ({placeholders})",
            *_to_row(order),
        )
        return order

    async def save(self, order: Order, expected_version: int) -> Order:
        row = _to_row(order)
        # $1 is the id, $2.. are the remaining columns, $24 is the expected version
        result = await Database.execute(
            """
            UPDATE orders SET
                user_id = $2, status = $3, previous_status = $4, payment_method = $5,
                payment_provider = $6, payment_reference = $7, payment_result = $8,
                items = $9, shipping_address = $10, items_price_cents = $11,
                tax_price_cents = $12, shipping_price_cents = $13, total_price_cents = $14,
                currency = $15, stock_committed = $16, stock_shortfall = $17,
                correlation_id = $18, version = $19, created_at = $20, updated_at = $21,
                paid_at = $22, delivered_at = $23
            WHERE id = $1 AND version = $24
            """,
            *row,
            expected_version,
        )
        if result != "UPDATE 1":
            raise ConcurrentUpdateError(order.order_id, expected_version)
        return order

    async def delete(self, order_id: str) -> bool:
        result = await Database.execute("DELETE FROM orders WHERE id = $1", order_id)
        return result == "DELETE 1"

    async def list_by_user(self, user_id: str) -> list[Order]:
        rows = await Database.fetch_all(
            f"SELECT {_COLUMNS} FROM orders WHERE user_id = $1 ORDER BY created_at DESC",
            user_id,
        )
        return [_from_row(r) for r in rows]

    async def list_all(self) -> list[Order]:
        rows = await Database.fetch_all(f"SELECT {_COLUMNS} FROM orders ORDER BY created_at DESC")
        return [_from_row(r) for r in rows]

    async def get_by_payment_reference(self, reference: str) -> Optional[Order]:
        row = await Database.fetch_one(
            f"SELECT {_COLUMNS} FROM orders WHERE payment_reference = $1 LIMIT 1",
            reference,
        )
        return _from_row(row) if row else None

    async def list_stale(self, status: OrderStatus, older_than: datetime, limit: int = 10) -> list[Order]:
        rows = await Database.fetch_all(
            f"""
            SELECT {_COLUMNS} FROM orders
            WHERE status = $1 AND updated_at < $2
            ORDER BY last_reconciled_at ASC NULLS FIRST, updated_at ASC
            LIMIT $3
            """,
            status.value,
            older_than,
            limit,
        )
        return [_from_row(r) for r in rows]

    async def mark_reconciled(self, order_id: str, at: datetime) -> None:
        await Database.execute(
            "UPDATE orders SET last_reconciled_at = $2 WHERE id = $1",
            order_id,
            at,
        )

    async def list_uncommitted_paid(self, limit: int = 10) -> list[Order]:
        rows = await Database.fetch_all(
            f"""
            SELECT {_COLUMNS} FROM orders
            WHERE status IN ('paid', 'delivered') AND stock_committed = FALSE
            ORDER BY updated_at ASC
            LIMIT $1
            """,
            limit,
        )
        return [_from_row(r) for r in rows]
