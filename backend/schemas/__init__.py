# schemas/__init__.py
from schemas.commerce import (
    AuditEventType,
    AuditLogEntry,
    CartLine,
    CheckoutRequest,
    CheckoutResponse,
    CheckoutResult,
    InventoryChange,
    LineOutcome,
    LineStatus,
    ManifestLine,
    OrderStatus,
    PendingOrder,
    Product,
    WebhookAck,
    WebhookStatus,
    to_minor_units,
)

__all__ = [
    "AuditEventType",
    "AuditLogEntry",
    "CartLine",
    "CheckoutRequest",
    "CheckoutResponse",
    "CheckoutResult",
    "InventoryChange",
    "LineOutcome",
    "LineStatus",
    "ManifestLine",
    "OrderStatus",
    "PendingOrder",
    "Product",
    "WebhookAck",
    "WebhookStatus",
    "to_minor_units",
]
