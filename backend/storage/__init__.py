# storage/__init__.py
# ============================================================================
# ALIF STOREFRONT: STORAGE MODULE
# ============================================================================
# Catalog store, order repository and fulfillment ledgers
# ============================================================================

from storage.interfaces import (
    IAuditLog,
    ICatalogStore,
    IOrderRepository,
    IProcessedEventStore,
)
from storage.memory import (
    InMemoryAuditLog,
    InMemoryCatalogStore,
    InMemoryOrderRepository,
    InMemoryProcessedEventStore,
)

__all__ = [
    "IAuditLog",
    "ICatalogStore",
    "IOrderRepository",
    "IProcessedEventStore",
    "InMemoryAuditLog",
    "InMemoryCatalogStore",
    "InMemoryOrderRepository",
    "InMemoryProcessedEventStore",
]
