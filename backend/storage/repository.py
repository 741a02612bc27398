# storage/repository.py
# ============================================================================
# STOREFRONT BOT v1.0 — STORAGE INTERFACE
# ============================================================================
# Opaque repository for products, orders and the interaction log.
# The two conditional updates (status, payment reference) are the only
# writes the lifecycle engine performs on orders; both are atomic.
# ============================================================================

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from schemas.domain import (
    InteractionLogEntry,
    Order,
    OrderStatus,
    OrderWithProduct,
    Product,
)


# =============================================================================
# INTERFACE
# =============================================================================

class IStorage(ABC):
    """Persistence interface (swap in-memory / Postgres without code changes)"""

    # Products
    @abstractmethod
    async def get_product(self, product_id: str) -> Optional[Product]:
        pass

    @abstractmethod
    async def get_active_products(self, limit: Optional[int] = None) -> list[Product]:
        pass

    @abstractmethod
    async def create_product(self, product: Product) -> Product:
        pass

    # Orders
    @abstractmethod
    async def create_order(self, order: Order) -> Order:
        pass

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[OrderWithProduct]:
        pass

    @abstractmethod
    async def get_order_by_payment_reference(self, reference: str) -> Optional[OrderWithProduct]:
        pass

    @abstractmethod
    async def get_orders_by_buyer(self, buyer_id: str, limit: Optional[int] = None) -> list[OrderWithProduct]:
        """Most recent first."""
        pass

    @abstractmethod
    async def compare_and_set_status(
        self,
        order_id: str,
        expected: OrderStatus,
        new_status: OrderStatus,
    ) -> Optional[Order]:
        """
        Set status to `new_status` only if it is currently `expected`.
        Returns the updated order, or None when the order is missing or
        its status no longer matches.
        """
        pass

    @abstractmethod
    async def set_payment_reference(self, order_id: str, reference: str) -> Optional[Order]:
        """Bind a payment reference only if none is bound yet. None otherwise."""
        pass

    # Interaction log
    @abstractmethod
    async def log_interaction(self, entry: InteractionLogEntry) -> InteractionLogEntry:
        pass

    @abstractmethod
    async def get_recent_interactions(self, limit: int = 50) -> list[InteractionLogEntry]:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemoryStorage(IStorage):
    """Asyncio-safe in-memory storage for single-instance runs and tests"""

    def __init__(self):
        self._products: dict[str, Product] = {}
        self._orders: dict[str, Order] = {}
        self._interactions: list[InteractionLogEntry] = []
        self._lock = asyncio.Lock()

    def _join(self, order: Order) -> Optional[OrderWithProduct]:
        product = self._products.get(order.product_id)
        if product is None:
            return None
        return OrderWithProduct(**order.model_dump(exclude={"is_terminal"}), product=product)

    async def get_product(self, product_id: str) -> Optional[Product]:
        async with self._lock:
            return self._products.get(product_id)

    async def get_active_products(self, limit: Optional[int] = None) -> list[Product]:
        async with self._lock:
            products = sorted(
                (p for p in self._products.values() if p.active),
                key=lambda p: p.created_at,
                reverse=True,
            )
        return products[:limit] if limit else products

    async def create_product(self, product: Product) -> Product:
        async with self._lock:
            self._products[product.id] = product
            return product

    async def create_order(self, order: Order) -> Order:
        async with self._lock:
            self._orders[order.id] = order
            return order

    async def get_order(self, order_id: str) -> Optional[OrderWithProduct]:
        async with self._lock:
            order = self._orders.get(order_id)
            return self._join(order) if order else None

    async def get_order_by_payment_reference(self, reference: str) -> Optional[OrderWithProduct]:
        async with self._lock:
            for order in self._orders.values():
                if order.payment_reference == reference:
                    return self._join(order)
            return None

    async def get_orders_by_buyer(self, buyer_id: str, limit: Optional[int] = None) -> list[OrderWithProduct]:
        async with self._lock:
            orders = sorted(
                (o for o in self._orders.values() if o.buyer_id == buyer_id),
                key=lambda o: o.created_at,
                reverse=True,
            )
            joined = [j for j in (self._join(o) for o in orders) if j is not None]
        return joined[:limit] if limit else joined

    async def compare_and_set_status(
        self,
        order_id: str,
        expected: OrderStatus,
        new_status: OrderStatus,
    ) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.status != expected:
                return None
            updated = order.with_status(new_status)
            self._orders[order_id] = updated
            return updated

    async def set_payment_reference(self, order_id: str, reference: str) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.payment_reference is not None:
                return None
            updated = order.model_copy(update={
                "payment_reference": reference,
                "updated_at": datetime.utcnow(),
            })
            self._orders[order_id] = updated
            return updated

    async def log_interaction(self, entry: InteractionLogEntry) -> InteractionLogEntry:
        async with self._lock:
            self._interactions.append(entry)
            return entry

    async def get_recent_interactions(self, limit: int = 50) -> list[InteractionLogEntry]:
        async with self._lock:
            return list(reversed(self._interactions))[:limit]
