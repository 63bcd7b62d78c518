# schemas/commerce.py
# ============================================================================
# ALIF STOREFRONT: CHECKOUT & FULFILLMENT SCHEMAS
# ============================================================================
# Canonical shapes shared by the checkout service, the webhook handler and
# the catalog store. Legacy catalog fields are normalized here, once.
# ============================================================================

import hashlib
import uuid
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, computed_field, field_validator


# ============================================================================
# SECTION 1: MONEY
# ============================================================================

def to_minor_units(price: Union[int, float, str, Decimal], factor: int = 100) -> int:
    """
    Convert a major-unit price (e.g. 49.99) into integer minor units (4999).

    Goes through Decimal(str(price)) so 0.1 + 0.2 style float noise never
    leaks into the amount sent to the gateway. Rounds half-up.
    """
    amount = Decimal(str(price)) * Decimal(factor)
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# ============================================================================
# SECTION 2: ENUMS
# ============================================================================

class OrderStatus(str, Enum):
    PENDING = "pending"
    FULFILLED = "fulfilled"
    EXPIRED = "expired"


class LineStatus(str, Enum):
    DECREMENTED = "decremented"
    MISSING = "missing"
    FAILED = "failed"


class WebhookStatus(str, Enum):
    """Terminal outcome of one webhook delivery."""
    FULFILLED = "fulfilled"
    PARTIAL = "partial"
    DUPLICATE = "duplicate"
    MANIFEST_UNREADABLE = "manifest_unreadable"
    EXPIRED = "expired"
    IGNORED = "ignored"


class AuditEventType(str, Enum):
    SESSION_CREATED = "session.created"
    ORDER_PERSIST_FAILED = "order.persist_failed"
    ORDER_FULFILLED = "order.fulfilled"
    ORDER_EXPIRED = "order.expired"
    WEBHOOK_REJECTED = "webhook.rejected"
    WEBHOOK_DUPLICATE = "webhook.duplicate"
    MANIFEST_UNREADABLE = "fulfillment.manifest_unreadable"
    PRODUCT_MISSING = "fulfillment.product_missing"
    LINE_FAILED = "fulfillment.line_failed"
    STOCK_SHORTFALL = "fulfillment.stock_shortfall"
    PAID_AFTER_EXPIRY = "fulfillment.paid_after_expiry"


# ============================================================================
# SECTION 3: CART / CHECKOUT
# ============================================================================

class CartLine(BaseModel):
    """One line of the client-owned cart snapshot."""
    id: str = Field(..., min_length=1)
    name: str = Field(default="")
    image: Optional[str] = None
    price: Decimal = Field(..., ge=0, description="Unit price in major currency units")
    quantity: int = Field(..., ge=1)


class CheckoutRequest(BaseModel):
    items: List[CartLine] = Field(default_factory=list)
    email: Optional[str] = None


class CheckoutResponse(BaseModel):
    id: str
    url: str


class ManifestLine(BaseModel):
    """Minimal {productId, quantity} pair needed to fulfill one cart line."""
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)


class CheckoutResult(BaseModel):
    """Checkout session creation result"""
    session_id: str
    checkout_url: str
    order_id: Optional[str] = None
    amount_total: int
    currency: str
    correlation_id: str


# ============================================================================
# SECTION 4: CATALOG
# ============================================================================

class Product(BaseModel):
    """
    Canonical catalog record.

    The storefront historically mixed `_id`/`id`, `title`/`name` and
    major-unit `price` on product documents. `from_document` is the only
    place those variants are accepted.
    """
    id: str
    title: str
    sku: str
    price_minor_units: int = Field(default=0, ge=0)
    inventory_count: int = Field(default=0, ge=0)
    is_available: bool = True

    @classmethod
    def from_document(cls, doc: Dict[str, Any], minor_unit_factor: int = 100) -> "Product":
        product_id = doc.get("id") or doc.get("_id")
        if product_id is None:
            raise ValueError("product document has no id")

        if "price_minor_units" in doc:
            price_minor = int(doc["price_minor_units"])
        elif doc.get("price") is not None:
            price_minor = to_minor_units(doc["price"], minor_unit_factor)
        else:
            price_minor = 0

        return cls(
            id=str(product_id),
            title=doc.get("title") or doc.get("name") or "",
            sku=doc.get("sku") or str(product_id),
            price_minor_units=price_minor,
            inventory_count=max(0, int(doc.get("inventory_count", doc.get("inventoryCount")) or 0)),
            is_available=bool(doc.get("is_available", doc.get("isAvailable", True))),
        )


class InventoryChange(BaseModel):
    """Result of one atomic decrement-with-floor."""
    product_id: str
    previous_count: int
    new_count: int
    requested: int

    @computed_field
    @property
    def shortfall(self) -> int:
        return max(0, self.requested - self.previous_count)


# ============================================================================
# SECTION 5: ORDERS
# ============================================================================

class PendingOrder(BaseModel):
    """Order record created at session creation, keyed by gateway session id."""
    order_id: str
    session_id: str
    email: Optional[str] = None
    lines: List[ManifestLine]
    amount_total: int = Field(ge=0, description="Minor units")
    currency: str
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    status: OrderStatus = OrderStatus.PENDING
    fulfilled_by_event: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    fulfilled_at: Optional[datetime] = None

    @staticmethod
    def generate_order_id(session_id: str) -> str:
        h = hashlib.sha256(f"order:{session_id}".encode()).hexdigest()[:10].upper()
        return f"ORD-{h}"

    def transition_to(self, new_status: OrderStatus, **changes: Any) -> "PendingOrder":
        return self.model_copy(update={
            "status": new_status,
            "updated_at": datetime.utcnow(),
            **changes,
        })


# ============================================================================
# SECTION 6: AUDIT / ALERTING SINK
# ============================================================================

class AuditLogEntry(BaseModel):
    """Immutable audit log entry"""
    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str
    event_type: AuditEventType
    entity_type: str  # "checkout_session", "order", "product", "webhook"
    entity_id: str
    severity: str = "INFO"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("severity")
    @classmethod
    def _known_severity(cls, v: str) -> str:
        v = v.upper()
        if v not in {"DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown severity: {v}")
        return v


# ============================================================================
# SECTION 7: WEBHOOK RESULTS
# ============================================================================

class LineOutcome(BaseModel):
    product_id: str
    quantity: int
    status: LineStatus
    remaining: Optional[int] = None
    shortfall: int = 0
    error: Optional[str] = None


class WebhookAck(BaseModel):
    """Body returned to the gateway for every acknowledged delivery."""
    received: bool = True
    status: WebhookStatus
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    session_id: Optional[str] = None
    lines: List[LineOutcome] = Field(default_factory=list)
