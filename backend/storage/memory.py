"""
In-memory storage implementations.

Single-process only: every read-modify-write runs under an asyncio.Lock,
which is what makes decrement_inventory atomic here. Use storage.postgres
once more than one worker process shares the catalog.
"""

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from schemas import (
    AuditLogEntry,
    InventoryChange,
    OrderStatus,
    PendingOrder,
    Product,
)
from storage.interfaces import IAuditLog, ICatalogStore, IOrderRepository, IProcessedEventStore


class InMemoryCatalogStore(ICatalogStore):

    def __init__(self):
        self._products: Dict[str, Product] = {}
        self._lock = asyncio.Lock()

    # Seed helper (tests / local demo)
    def add_product(
        self,
        product_id: str,
        inventory_count: int,
        title: Optional[str] = None,
        sku: Optional[str] = None,
        price_minor_units: int = 0,
    ) -> Product:
        product = Product(
            id=product_id,
            title=title or product_id,
            sku=sku or f"SKU-{product_id}",
            price_minor_units=price_minor_units,
            inventory_count=inventory_count,
        )
        self._products[product_id] = product
        return product

    async def get_product(self, product_id: str) -> Optional[Product]:
        async with self._lock:
            return self._products.get(product_id)

    async def get_products(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        async with self._lock:
            return {pid: self._products[pid] for pid in product_ids if pid in self._products}

    async def save_product(self, product: Product) -> Product:
        async with self._lock:
            for other in self._products.values():
                if other.sku == product.sku and other.id != product.id:
                    raise ValueError(f"duplicate sku: {product.sku}")
            self._products[product.id] = product
            return product

    async def decrement_inventory(self, product_id: str, quantity: int) -> Optional[InventoryChange]:
        async with self._lock:
            product = self._products.get(product_id)
            if product is None:
                return None
            new_count = max(0, product.inventory_count - quantity)
            self._products[product_id] = product.model_copy(update={"inventory_count": new_count})
            return InventoryChange(
                product_id=product_id,
                previous_count=product.inventory_count,
                new_count=new_count,
                requested=quantity,
            )

    async def health_check(self) -> bool:
        return True


class InMemoryOrderRepository(IOrderRepository):

    def __init__(self):
        self._orders: Dict[str, PendingOrder] = {}
        self._lock = asyncio.Lock()

    async def create(self, order: PendingOrder) -> PendingOrder:
        async with self._lock:
            if order.session_id in self._orders:
                raise ValueError(f"order already exists for session {order.session_id}")
            self._orders[order.session_id] = order
            return order

    async def get_by_session(self, session_id: str) -> Optional[PendingOrder]:
        async with self._lock:
            return self._orders.get(session_id)

    async def list_by_email(self, email: str, limit: int = 50) -> List[PendingOrder]:
        async with self._lock:
            orders = [o for o in self._orders.values() if o.email == email]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders[:limit]

    async def claim_for_fulfillment(self, session_id: str, event_id: str) -> Optional[PendingOrder]:
        async with self._lock:
            order = self._orders.get(session_id)
            if order is None or order.status != OrderStatus.PENDING:
                return None
            claimed = order.transition_to(
                OrderStatus.FULFILLED,
                fulfilled_by_event=event_id,
                fulfilled_at=datetime.utcnow(),
            )
            self._orders[session_id] = claimed
            return claimed

    async def mark_expired(self, session_id: str) -> Optional[PendingOrder]:
        async with self._lock:
            order = self._orders.get(session_id)
            if order is None or order.status != OrderStatus.PENDING:
                return None
            expired = order.transition_to(OrderStatus.EXPIRED)
            self._orders[session_id] = expired
            return expired


class InMemoryProcessedEventStore(IProcessedEventStore):

    def __init__(self):
        self._seen: Set[str] = set()
        self._lock = asyncio.Lock()

    async def try_record(self, key: str) -> bool:
        async with self._lock:
            if key in self._seen:
                return False
            self._seen.add(key)
            return True

    async def is_recorded(self, key: str) -> bool:
        async with self._lock:
            return key in self._seen


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: List[AuditLogEntry] = []
        self._by_correlation: Dict[str, List[AuditLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)
            self._by_correlation[entry.correlation_id].append(entry)

    async def get_by_correlation_id(self, correlation_id: str) -> List[AuditLogEntry]:
        async with self._lock:
            return list(self._by_correlation.get(correlation_id, []))

    async def recent(self, limit: int = 50) -> List[AuditLogEntry]:
        async with self._lock:
            return list(reversed(self._logs[-limit:]))

    @property
    def entries(self) -> List[AuditLogEntry]:
        return list(self._logs)
