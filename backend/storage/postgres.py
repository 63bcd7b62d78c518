"""
PostgreSQL storage implementations (asyncpg).

Concurrency is delegated to the database: the inventory decrement is a
single conditional UPDATE, order transitions are guarded by their WHERE
clause, and the event ledger relies on the primary key.
"""

import json
from typing import Dict, Iterable, List, Optional

import asyncpg
import structlog

from database import Database
from pipeline.errors import StoreUnavailableError
from schemas import (
    AuditEventType,
    AuditLogEntry,
    InventoryChange,
    ManifestLine,
    OrderStatus,
    PendingOrder,
    Product,
)
from storage.interfaces import IAuditLog, ICatalogStore, IOrderRepository, IProcessedEventStore

logger = structlog.get_logger(component="postgres_store")


def _row_to_product(row: asyncpg.Record) -> Product:
    return Product.from_document(dict(row))


def _row_to_order(row: asyncpg.Record) -> PendingOrder:
    result = dict(row)
    lines = result["lines"]
    if isinstance(lines, str):
        lines = json.loads(lines)
    result["lines"] = [ManifestLine(**line) for line in lines]
    return PendingOrder(**result)


class PostgresCatalogStore(ICatalogStore):

    def __init__(self, db: Database):
        self.db = db

    async def get_product(self, product_id: str) -> Optional[Product]:
        row = await self.db.fetch_one("SELECT * FROM products WHERE id = $1", product_id)
        return _row_to_product(row) if row else None

    async def get_products(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        ids = list(product_ids)
        if not ids:
            return {}
        rows = await self.db.fetch_all("SELECT * FROM products WHERE id = ANY($1::text[])", ids)
        return {row["id"]: _row_to_product(row) for row in rows}

    async def save_product(self, product: Product) -> Product:
        await self.db.execute(
            """
            INSERT INTO products (id, title, sku, price_minor_units, inventory_count, is_available)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (id) DO UPDATE SET
                title = EXCLUDED.title,
                sku = EXCLUDED.sku,
                price_minor_units = EXCLUDED.price_minor_units,
                inventory_count = EXCLUDED.inventory_count,
                is_available = EXCLUDED.is_available,
                updated_at = NOW()
            """,
            product.id,
            product.title,
            product.sku,
            product.price_minor_units,
            product.inventory_count,
            product.is_available,
        )
        return product

    async def decrement_inventory(self, product_id: str, quantity: int) -> Optional[InventoryChange]:
        # The row lock taken by UPDATE serializes concurrent decrements of the
        # same product; the sub-select reads the pre-image under that lock.
        try:
            row = await self.db.fetch_one(
                """
                UPDATE products AS p
                SET inventory_count = GREATEST(p.inventory_count - $2, 0),
                    updated_at = NOW()
                FROM (SELECT id, inventory_count FROM products WHERE id = $1 FOR UPDATE) AS before
                WHERE p.id = before.id
                RETURNING before.inventory_count AS previous_count, p.inventory_count AS new_count
                """,
                product_id,
                quantity,
            )
        except (asyncpg.PostgresError, OSError) as e:
            raise StoreUnavailableError(f"decrement failed for {product_id}: {e}") from e

        if row is None:
            return None
        return InventoryChange(
            product_id=product_id,
            previous_count=row["previous_count"],
            new_count=row["new_count"],
            requested=quantity,
        )

    async def health_check(self) -> bool:
        return await self.db.health_check()


class PostgresOrderRepository(IOrderRepository):

    def __init__(self, db: Database):
        self.db = db

    async def create(self, order: PendingOrder) -> PendingOrder:
        await self.db.execute(
            """
            INSERT INTO pending_orders
            (session_id, order_id, email, lines, amount_total, currency, correlation_id, status,
             created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            """,
            order.session_id,
            order.order_id,
            order.email,
            json.dumps([line.model_dump() for line in order.lines]),
            order.amount_total,
            order.currency,
            order.correlation_id,
            order.status.value,
            order.created_at,
            order.updated_at,
        )
        return order

    async def get_by_session(self, session_id: str) -> Optional[PendingOrder]:
        try:
            row = await self.db.fetch_one("SELECT * FROM pending_orders WHERE session_id = $1", session_id)
        except (asyncpg.PostgresError, OSError) as e:
            raise StoreUnavailableError(f"order lookup failed for session {session_id}: {e}") from e
        return _row_to_order(row) if row else None

    async def list_by_email(self, email: str, limit: int = 50) -> List[PendingOrder]:
        try:
            rows = await self.db.fetch_all(
                "SELECT * FROM pending_orders WHERE email = $1 ORDER BY created_at DESC LIMIT $2",
                email,
                limit,
            )
        except (asyncpg.PostgresError, OSError) as e:
            raise StoreUnavailableError(f"order history lookup failed: {e}") from e
        return [_row_to_order(row) for row in rows]

    async def claim_for_fulfillment(self, session_id: str, event_id: str) -> Optional[PendingOrder]:
        try:
            row = await self.db.fetch_one(
                """
                UPDATE pending_orders
                SET status = $2, fulfilled_by_event = $3, fulfilled_at = NOW(), updated_at = NOW()
                WHERE session_id = $1 AND status = $4
                RETURNING *
                """,
                session_id,
                OrderStatus.FULFILLED.value,
                event_id,
                OrderStatus.PENDING.value,
            )
        except (asyncpg.PostgresError, OSError) as e:
            raise StoreUnavailableError(f"claim failed for session {session_id}: {e}") from e
        return _row_to_order(row) if row else None

    async def mark_expired(self, session_id: str) -> Optional[PendingOrder]:
        try:
            row = await self.db.fetch_one(
                """
                UPDATE pending_orders
                SET status = $2, updated_at = NOW()
                WHERE session_id = $1 AND status = $3
                RETURNING *
                """,
                session_id,
                OrderStatus.EXPIRED.value,
                OrderStatus.PENDING.value,
            )
        except (asyncpg.PostgresError, OSError) as e:
            raise StoreUnavailableError(f"expire failed for session {session_id}: {e}") from e
        return _row_to_order(row) if row else None


class PostgresProcessedEventStore(IProcessedEventStore):

    def __init__(self, db: Database):
        self.db = db

    async def try_record(self, key: str) -> bool:
        try:
            row = await self.db.fetch_one(
                """
                INSERT INTO processed_events (event_key) VALUES ($1)
                ON CONFLICT (event_key) DO NOTHING
                RETURNING event_key
                """,
                key,
            )
        except (asyncpg.PostgresError, OSError) as e:
            raise StoreUnavailableError(f"event ledger unavailable: {e}") from e
        return row is not None

    async def is_recorded(self, key: str) -> bool:
        try:
            row = await self.db.fetch_one("SELECT 1 FROM processed_events WHERE event_key = $1", key)
        except (asyncpg.PostgresError, OSError) as e:
            raise StoreUnavailableError(f"event ledger unavailable: {e}") from e
        return row is not None


class PostgresAuditLog(IAuditLog):
    """Audit entries land in system_events"""

    def __init__(self, db: Database):
        self.db = db

    async def append(self, entry: AuditLogEntry) -> None:
        await self.db.execute(
            """
            INSERT INTO system_events
            (id, correlation_id, timestamp, event_type, entity_type, entity_id, payload, severity)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """,
            entry.log_id,
            entry.correlation_id,
            entry.timestamp,
            entry.event_type.value,
            entry.entity_type,
            entry.entity_id,
            json.dumps(entry.metadata, default=str),
            entry.severity,
        )

    async def get_by_correlation_id(self, correlation_id: str) -> List[AuditLogEntry]:
        rows = await self.db.fetch_all(
            "SELECT * FROM system_events WHERE correlation_id = $1 ORDER BY timestamp",
            correlation_id,
        )
        return [self._row_to_entry(row) for row in rows]

    async def recent(self, limit: int = 50) -> List[AuditLogEntry]:
        rows = await self.db.fetch_all(
            "SELECT * FROM system_events ORDER BY timestamp DESC LIMIT $1",
            limit,
        )
        return [self._row_to_entry(row) for row in rows]

    @staticmethod
    def _row_to_entry(row: asyncpg.Record) -> AuditLogEntry:
        payload = row["payload"]
        if isinstance(payload, str):
            payload = json.loads(payload)
        return AuditLogEntry(
            log_id=str(row["id"]),
            correlation_id=row["correlation_id"],
            event_type=AuditEventType(row["event_type"]),
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            severity=row["severity"],
            metadata=payload,
            timestamp=row["timestamp"],
        )
