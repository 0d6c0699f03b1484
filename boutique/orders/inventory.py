"""
Stock ledger.

``commit_order_stock`` is the only place stock ever goes down. It is keyed by
order id (a second call for the same order is a no-op) and all-or-nothing:
every line is decremented only if every line has enough stock, using a
conditional "decrement where count_in_stock >= qty" per product.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from boutique.database import Database
from boutique.errors import InsufficientStockError, ProductNotFoundError
from boutique.orders.models import OrderItem


class Product(BaseModel):
    product_id: str
    name: str
    price_cents: int = Field(..., ge=0)
    count_in_stock: int = Field(0, ge=0)
    image: Optional[str] = None


class StockCommitResult(BaseModel):
    order_id: str
    already_committed: bool = False
    decremented: dict[str, int] = Field(default_factory=dict)


def aggregate_quantities(items: list[OrderItem]) -> "OrderedDict[str, int]":
    """Sum qty per product so two lines of the same product are checked together"""
    totals: OrderedDict[str, int] = OrderedDict()
    for item in items:
        totals[item.product_id] = totals.get(item.product_id, 0) + item.qty
    return totals


class IInventory(ABC):
    """Product stock interface"""

    @abstractmethod
    async def get_product(self, product_id: str) -> Optional[Product]:
        pass

    @abstractmethod
    async def get_products(self, product_ids: list[str]) -> dict[str, Product]:
        pass

    @abstractmethod
    async def add_product(self, product: Product) -> Product:
        pass

    @abstractmethod
    async def restock(self, product_id: str, qty: int) -> Product:
        pass

    @abstractmethod
    async def commit_order_stock(self, order_id: str, items: list[OrderItem]) -> StockCommitResult:
        """Atomically take stock for a paid order, exactly once per order id."""
        pass

    @abstractmethod
    async def is_committed(self, order_id: str) -> bool:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemoryInventory(IInventory):

    def __init__(self, products: Optional[list[Product]] = None):
        self._products: dict[str, Product] = {p.product_id: p for p in products or []}
        self._commits: dict[str, dict[str, int]] = {}
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="inventory")

    async def get_product(self, product_id: str) -> Optional[Product]:
        async with self._lock:
            return self._products.get(product_id)

    async def get_products(self, product_ids: list[str]) -> dict[str, Product]:
        async with self._lock:
            return {pid: self._products[pid] for pid in product_ids if pid in self._products}

    async def add_product(self, product: Product) -> Product:
        async with self._lock:
            self._products[product.product_id] = product
            return product

    async def restock(self, product_id: str, qty: int) -> Product:
        async with self._lock:
            product = self._products.get(product_id)
            if product is None:
                raise ProductNotFoundError(product_id)
            product = product.model_copy(update={"count_in_stock": product.count_in_stock + qty})
            self._products[product_id] = product
            return product

    async def commit_order_stock(self, order_id: str, items: list[OrderItem]) -> StockCommitResult:
        totals = aggregate_quantities(items)
        names = {item.product_id: item.name for item in items}

        async with self._lock:
            if order_id in self._commits:
                return StockCommitResult(order_id=order_id, already_committed=True)

            shortfalls = []
            for product_id, qty in totals.items():
                product = self._products.get(product_id)
                available = product.count_in_stock if product else 0
                if available < qty:
                    shortfalls.append({
                        "product_id": product_id,
                        "name": names.get(product_id),
                        "requested": qty,
                        "available": available,
                    })
            if shortfalls:
                raise InsufficientStockError(shortfalls)

            for product_id, qty in totals.items():
                product = self._products[product_id]
                self._products[product_id] = product.model_copy(
                    update={"count_in_stock": product.count_in_stock - qty}
                )
            self._commits[order_id] = dict(totals)

        self._logger.info("stock_committed", order_id=order_id, lines=len(totals))
        return StockCommitResult(order_id=order_id, decremented=dict(totals))

    async def is_committed(self, order_id: str) -> bool:
        async with self._lock:
            return order_id in self._commits


# =============================================================================
# POSTGRES IMPLEMENTATION
# =============================================================================

class PostgresInventory(IInventory):

    def __init__(self):
        self._logger = structlog.get_logger().bind(component="inventory")

    @staticmethod
    def _product(row) -> Product:
        return Product(
            product_id=row["id"],
            name=row["name"],
            price_cents=row["price_cents"],
            count_in_stock=row["count_in_stock"],
            image=row["image"],
        )

    async def get_product(self, product_id: str) -> Optional[Product]:
        row = await Database.fetch_one("SELECT * FROM products WHERE id = $1", product_id)
        return self._product(row) if row else None

    async def get_products(self, product_ids: list[str]) -> dict[str, Product]:
        rows = await Database.fetch_all("SELECT * FROM products WHERE id = ANY($1)", product_ids)
        return {row["id"]: self._product(row) for row in rows}

    async def add_product(self, product: Product) -> Product:
        await Database.execute(
            """
            INSERT INTO products (id, name, price_cents, count_in_stock, image)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (id) DO UPDATE SET
                name = EXCLUDED.name,
                price_cents = EXCLUDED.price_cents,
                count_in_stock = EXCLUDED.count_in_stock,
                image = EXCLUDED.image,
                updated_at = NOW()
            """,
            product.product_id,
            product.name,
            product.price_cents,
            product.count_in_stock,
            product.image,
        )
        return product

    async def restock(self, product_id: str, qty: int) -> Product:
        row = await Database.fetch_one(
            """
            UPDATE products SET count_in_stock = count_in_stock + $2, updated_at = NOW()
            WHERE id = $1
            RETURNING *
            """,
            product_id,
            qty,
        )
        if row is None:
            raise ProductNotFoundError(product_id)
        return self._product(row)

    async def commit_order_stock(self, order_id: str, items: list[OrderItem]) -> StockCommitResult:
        totals = aggregate_quantities(items)
        names = {item.product_id: item.name for item in items}

        shortfalls = []
        try:
            async with Database.transaction() as conn:
                claimed = await conn.execute(
                    """
                    INSERT INTO stock_commits (order_id, items)
                    VALUES ($1, $2)
                    ON CONFLICT (order_id) DO NOTHING
                    """,
                    order_id,
                    json.dumps(totals),
                )
                if claimed == "INSERT 0 0":
                    return StockCommitResult(order_id=order_id, already_committed=True)

                for product_id, qty in totals.items():
                    row = await conn.fetchrow(
                        """
                        UPDATE products
                        SET count_in_stock = count_in_stock - $2, updated_at = NOW()
                        WHERE id = $1 AND count_in_stock >= $2
                        RETURNING count_in_stock
                        """,
                        product_id,
                        qty,
                    )
                    if row is None:
                        current = await conn.fetchval(
                            "SELECT count_in_stock FROM products WHERE id = $1", product_id
                        )
                        shortfalls.append({
                            "product_id": product_id,
                            "name": names.get(product_id),
                            "requested": qty,
                            "available": current or 0,
                        })

                if shortfalls:
                    # Rolls back the ledger row and every decrement above
                    raise InsufficientStockError(shortfalls)
        except InsufficientStockError:
            self._logger.warning("stock_commit_rejected", order_id=order_id, shortfalls=shortfalls)
            raise

        self._logger.info("stock_committed", order_id=order_id, lines=len(totals))
        return StockCommitResult(order_id=order_id, decremented=dict(totals))

    async def is_committed(self, order_id: str) -> bool:
        row = await Database.fetch_one("SELECT 1 FROM stock_commits WHERE order_id = $1", order_id)
        return row is not None
