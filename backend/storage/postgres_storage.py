# storage/postgres_storage.py
# ============================================================================
# STOREFRONT BOT v1.0 — POSTGRES STORAGE
# ============================================================================
# asyncpg-backed IStorage. Conditional updates are single UPDATE ... WHERE
# statements so concurrent gates race on the row, not in Python.
# ============================================================================

from typing import Any, Mapping, Optional

import structlog

from database import Database
from schemas.domain import (
    InteractionLogEntry,
    Order,
    OrderStatus,
    OrderWithProduct,
    Product,
)
from storage.repository import IStorage

logger = structlog.get_logger(component="postgres_storage")

ORDER_COLUMNS = (
    "o.id, o.buyer_id, o.buyer_name, o.product_id, o.quantity, o.total_amount, "
    "o.currency, o.status, o.payment_reference, o.created_at, o.updated_at"
)
PRODUCT_COLUMNS = (
    "p.id AS p_id, p.name AS p_name, p.description AS p_description, "
    "p.price AS p_price, p.currency AS p_currency, p.image_url AS p_image_url, "
    "p.active AS p_active, p.created_at AS p_created_at"
)
JOINED_SELECT = f"SELECT {ORDER_COLUMNS}, {PRODUCT_COLUMNS} FROM orders o JOIN products p ON p.id = o.product_id"


def product_from_row(row: Mapping[str, Any], prefix: str = "") -> Product:
    return Product(
        id=row[f"{prefix}id"],
        name=row[f"{prefix}name"],
        description=row[f"{prefix}description"] or "",
        price=row[f"{prefix}price"],
        currency=row[f"{prefix}currency"],
        image_url=row[f"{prefix}image_url"],
        active=row[f"{prefix}active"],
        created_at=row[f"{prefix}created_at"],
    )


def order_from_row(row: Mapping[str, Any]) -> Order:
    return Order(
        id=row["id"],
        buyer_id=row["buyer_id"],
        buyer_name=row["buyer_name"],
        product_id=row["product_id"],
        quantity=row["quantity"],
        total_amount=row["total_amount"],
        currency=row["currency"],
        status=OrderStatus(row["status"]),
        payment_reference=row["payment_reference"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def joined_from_row(row: Mapping[str, Any]) -> OrderWithProduct:
    order = order_from_row(row)
    return OrderWithProduct(
        **order.model_dump(exclude={"is_terminal"}),
        product=product_from_row(row, prefix="p_"),
    )


class PostgresStorage(IStorage):
    """IStorage on top of the pooled Database helper"""

    def __init__(self, db=Database):
        self._db = db

    # -------------------------------------------------------------------------
    # Products
    # -------------------------------------------------------------------------

    async def get_product(self, product_id: str) -> Optional[Product]:
        row = await self._db.fetch_one("SELECT * FROM products WHERE id = $1", product_id)
        return product_from_row(row) if row else None

    async def get_active_products(self, limit: Optional[int] = None) -> list[Product]:
        query = "SELECT * FROM products WHERE active = TRUE ORDER BY created_at DESC"
        if limit:
            rows = await self._db.fetch_all(query + " LIMIT $1", limit)
        else:
            rows = await self._db.fetch_all(query)
        return [product_from_row(row) for row in rows]

    async def create_product(self, product: Product) -> Product:
        row = await self._db.fetch_one(
            """
            INSERT INTO products (id, name, description, price, currency, image_url, active, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            RETURNING *
            """,
            product.id, product.name, product.description, product.price,
            product.currency, product.image_url, product.active, product.created_at,
        )
        return product_from_row(row)

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    async def create_order(self, order: Order) -> Order:
        row = await self._db.fetch_one(
            """
            INSERT INTO orders
                (id, buyer_id, buyer_name, product_id, quantity, total_amount,
                 currency, status, payment_reference, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            RETURNING *
            """,
            order.id, order.buyer_id, order.buyer_name, order.product_id,
            order.quantity, order.total_amount, order.currency, order.status.value,
            order.payment_reference, order.created_at, order.updated_at,
        )
        return order_from_row(row)

    async def get_order(self, order_id: str) -> Optional[OrderWithProduct]:
        row = await self._db.fetch_one(f"{JOINED_SELECT} WHERE o.id = $1", order_id)
        return joined_from_row(row) if row else None

    async def get_order_by_payment_reference(self, reference: str) -> Optional[OrderWithProduct]:
        row = await self._db.fetch_one(f"{JOINED_SELECT} WHERE o.payment_reference = $1", reference)
        return joined_from_row(row) if row else None

    async def get_orders_by_buyer(self, buyer_id: str, limit: Optional[int] = None) -> list[OrderWithProduct]:
        query = f"{JOINED_SELECT} WHERE o.buyer_id = $1 ORDER BY o.created_at DESC"
        if limit:
            rows = await self._db.fetch_all(query + " LIMIT $2", buyer_id, limit)
        else:
            rows = await self._db.fetch_all(query, buyer_id)
        return [joined_from_row(row) for row in rows]

    async def compare_and_set_status(
        self,
        order_id: str,
        expected: OrderStatus,
        new_status: OrderStatus,
    ) -> Optional[Order]:
        row = await self._db.fetch_one(
            """
            UPDATE orders
            SET status = $3, updated_at = NOW()
            WHERE id = $1 AND status = $2
            RETURNING *
            """,
            order_id, expected.value, new_status.value,
        )
        return order_from_row(row) if row else None

    async def set_payment_reference(self, order_id: str, reference: str) -> Optional[Order]:
        row = await self._db.fetch_one(
            """
            UPDATE orders
            SET payment_reference = $2, updated_at = NOW()
            WHERE id = $1 AND payment_reference IS NULL
            RETURNING *
            """,
            order_id, reference,
        )
        return order_from_row(row) if row else None

    # -------------------------------------------------------------------------
    # Interaction log
    # -------------------------------------------------------------------------

    async def log_interaction(self, entry: InteractionLogEntry) -> InteractionLogEntry:
        await self._db.execute(
            """
            INSERT INTO bot_interactions
                (id, actor_id, actor_name, message_type, content, response_sent, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            """,
            entry.id, entry.actor_id, entry.actor_name, entry.message_type.value,
            entry.content, entry.response_sent, entry.created_at,
        )
        return entry

    async def get_recent_interactions(self, limit: int = 50) -> list[InteractionLogEntry]:
        rows = await self._db.fetch_all(
            "SELECT * FROM bot_interactions ORDER BY created_at DESC LIMIT $1", limit
        )
        return [
            InteractionLogEntry(
                id=row["id"],
                actor_id=row["actor_id"],
                actor_name=row["actor_name"],
                message_type=row["message_type"],
                content=row["content"] or "",
                response_sent=row["response_sent"] or "",
                created_at=row["created_at"],
            )
            for row in rows
        ]
