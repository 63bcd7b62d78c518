"""
Checkout Session Service
========================
Turns a cart snapshot + contact email into a hosted checkout session.

Flow:
    validate cart -> gateway line items (minor units) -> manifest in metadata
    -> gateway session -> pending order keyed by session id

The pending order is the primary channel the webhook uses to learn what was
bought; the metadata manifest is kept as a fallback for when the order
could not be persisted.
"""

import uuid
from typing import Any, Dict, List, Optional

import structlog

from pipeline.audit import AuditEmitter
from pipeline.errors import CheckoutValidationError
from pipeline.manifest import ManifestError, encode_manifest, manifest_from_cart
from pipeline.payment_gateway import IPaymentGateway
from schemas import (
    AuditEventType,
    CartLine,
    CheckoutResult,
    PendingOrder,
    to_minor_units,
)
from storage import IAuditLog, IOrderRepository


class CheckoutService:

    def __init__(
        self,
        gateway: IPaymentGateway,
        orders: IOrderRepository,
        audit: IAuditLog,
        client_url: str = "http://localhost:5173",
        currency: str = "pkr",
        minor_unit_factor: int = 100,
    ):
        self.gateway = gateway
        self.orders = orders
        self.audit = AuditEmitter(audit, component="checkout_service")
        self.client_url = client_url.rstrip("/")
        self.currency = currency.lower()
        self.minor_unit_factor = minor_unit_factor
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str):
        return self._base_logger.bind(component="checkout_service", correlation_id=correlation_id)

    @property
    def success_url(self) -> str:
        return f"{self.client_url}/checkout?success=true&session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def cancel_url(self) -> str:
        return f"{self.client_url}/checkout?canceled=true"

    def _validate(self, items: List[CartLine]) -> None:
        if not items:
            raise CheckoutValidationError("Cart is empty.")
        for item in items:
            if item.quantity < 1:
                raise CheckoutValidationError(f"Invalid quantity for item {item.id}.")
            if item.price < 0:
                raise CheckoutValidationError(f"Invalid price for item {item.id}.")

    def build_line_items(self, items: List[CartLine]) -> List[Dict[str, Any]]:
        line_items = []
        for item in items:
            product_data: Dict[str, Any] = {"name": item.name or item.id}
            if item.image:
                product_data["images"] = [item.image]
            line_items.append({
                "price_data": {
                    "currency": self.currency,
                    "product_data": product_data,
                    "unit_amount": to_minor_units(item.price, self.minor_unit_factor),
                },
                "quantity": item.quantity,
            })
        return line_items

    async def create_session(self, items: List[CartLine], email: Optional[str] = None) -> CheckoutResult:
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id)

        # Must fail before any gateway traffic.
        self._validate(items)

        manifest = manifest_from_cart(items)
        try:
            metadata = encode_manifest(manifest)
        except ManifestError as e:
            raise CheckoutValidationError("Cart has too many items.") from e
        metadata["correlation_id"] = correlation_id

        line_items = self.build_line_items(items)
        amount_total = sum(li["price_data"]["unit_amount"] * li["quantity"] for li in line_items)

        log.info("checkout_initiated",
                 lines=len(items),
                 amount_total=amount_total,
                 currency=self.currency)

        session = await self.gateway.create_checkout_session(
            line_items=line_items,
            customer_email=email,
            metadata=metadata,
            success_url=self.success_url,
            cancel_url=self.cancel_url,
        )

        order = PendingOrder(
            order_id=PendingOrder.generate_order_id(session.id),
            session_id=session.id,
            email=email,
            lines=manifest,
            amount_total=amount_total,
            currency=self.currency,
            correlation_id=correlation_id,
        )
        order_id: Optional[str] = order.order_id
        try:
            await self.orders.create(order)
        except Exception as e:
            # The session exists and the customer can pay; fulfillment falls
            # back to the metadata manifest.
            order_id = None
            log.error("pending_order_persist_failed", session_id=session.id, error=str(e))
            await self.audit.emit(
                AuditEventType.ORDER_PERSIST_FAILED, "checkout_session", session.id,
                correlation_id, severity="ERROR", metadata={"error": str(e)},
            )
        else:
            await self.audit.emit(
                AuditEventType.SESSION_CREATED, "checkout_session", session.id,
                correlation_id, metadata={"order_id": order.order_id, "amount_total": amount_total},
            )

        log.info("checkout_created", session_id=session.id, order_id=order_id)

        return CheckoutResult(
            session_id=session.id,
            checkout_url=session.url,
            order_id=order_id,
            amount_total=amount_total,
            currency=self.currency,
            correlation_id=correlation_id,
        )
