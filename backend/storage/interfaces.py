"""
Storage Interfaces
==================
Persistence boundary for the checkout/fulfillment core.

- ICatalogStore: product lookup and the atomic decrement-with-floor
- IOrderRepository: pending orders keyed by gateway session id
- IProcessedEventStore: ledger of webhook event ids already handled
- IAuditLog: out-of-band sink for failures swallowed at the request boundary

Implementations: storage.memory (tests, single process) and
storage.postgres (asyncpg).
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from schemas import AuditLogEntry, InventoryChange, PendingOrder, Product


class ICatalogStore(ABC):
    """Catalog store adapter"""

    @abstractmethod
    async def get_product(self, product_id: str) -> Optional[Product]:
        pass

    @abstractmethod
    async def get_products(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        """Bulk lookup. Unknown ids are simply absent from the result."""
        pass

    @abstractmethod
    async def save_product(self, product: Product) -> Product:
        pass

    @abstractmethod
    async def decrement_inventory(self, product_id: str, quantity: int) -> Optional[InventoryChange]:
        """
        Atomically set inventory_count = max(0, inventory_count - quantity).

        Returns None when the product does not exist. Must be durable before
        returning and must serialize concurrent callers for the same product.
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        pass


class IOrderRepository(ABC):
    """Order-specific repository interface"""

    @abstractmethod
    async def create(self, order: PendingOrder) -> PendingOrder:
        pass

    @abstractmethod
    async def get_by_session(self, session_id: str) -> Optional[PendingOrder]:
        pass

    @abstractmethod
    async def list_by_email(self, email: str, limit: int = 50) -> List[PendingOrder]:
        pass

    @abstractmethod
    async def claim_for_fulfillment(self, session_id: str, event_id: str) -> Optional[PendingOrder]:
        """Conditional pending -> fulfilled. Returns the order only if this call won."""
        pass

    @abstractmethod
    async def mark_expired(self, session_id: str) -> Optional[PendingOrder]:
        """Conditional pending -> expired."""
        pass


class IProcessedEventStore(ABC):
    """Idempotency ledger"""

    @abstractmethod
    async def try_record(self, key: str) -> bool:
        """Record key. Returns False if it was already recorded."""
        pass

    @abstractmethod
    async def is_recorded(self, key: str) -> bool:
        pass


class IAuditLog(ABC):
    """Audit log interface"""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_correlation_id(self, correlation_id: str) -> List[AuditLogEntry]:
        pass

    @abstractmethod
    async def recent(self, limit: int = 50) -> List[AuditLogEntry]:
        pass
