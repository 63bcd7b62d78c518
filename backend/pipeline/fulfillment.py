"""
Fulfillment Webhook Handler
===========================
The only path by which a completed payment becomes an inventory mutation.

Per delivery:
    RECEIVED -> VERIFIED | REJECTED
    VERIFIED -> DISPATCHED | IGNORED
    DISPATCHED (checkout completed) -> PARSING -> APPLYING -> ACKNOWLEDGED

Guarantees:
- signature is verified before anything else runs (rejects never mutate)
- each checkout session is fulfilled at most once (pending -> fulfilled claim)
- an event id is written to the processed-event ledger only after it was
  dispatched, so a delivery that failed part way is always redelivered
- every line decrements through the store's atomic decrement-with-floor
- business failures are acknowledged with 200 and land in the audit log

pip install stripe structlog
"""

import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from pipeline.audit import AuditEmitter
from pipeline.errors import StoreUnavailableError, WebhookRejectedError
from pipeline.manifest import ManifestError, decode_manifest
from pipeline.payment_gateway import IPaymentGateway
from schemas import (
    AuditEventType,
    LineOutcome,
    LineStatus,
    ManifestLine,
    OrderStatus,
    WebhookAck,
    WebhookStatus,
)
from storage import IAuditLog, ICatalogStore, IOrderRepository, IProcessedEventStore

CHECKOUT_COMPLETED = "checkout.session.completed"
ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
CHECKOUT_EXPIRED = "checkout.session.expired"


# =============================================================================
# WEBHOOK ROUTER
# =============================================================================

WebhookHandler = Callable[[Dict[str, Any], str, str], Awaitable[WebhookAck]]


class WebhookRouter:
    """Event type -> handler registry."""

    def __init__(self):
        self._handlers: Dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    def handles(self, event_type: str) -> bool:
        return event_type in self._handlers

    async def route(self, event: Dict[str, Any], event_id: str, correlation_id: str) -> Optional[WebhookAck]:
        handler = self._handlers.get(event.get("type", "unknown"))
        if handler is None:
            return None
        return await handler(event, event_id, correlation_id)

    @property
    def supported_events(self) -> List[str]:
        return list(self._handlers.keys())


# =============================================================================
# HANDLER
# =============================================================================

class FulfillmentWebhookHandler:

    def __init__(
        self,
        gateway: IPaymentGateway,
        catalog: ICatalogStore,
        orders: IOrderRepository,
        processed_events: IProcessedEventStore,
        audit: IAuditLog,
    ):
        self.gateway = gateway
        self.catalog = catalog
        self.orders = orders
        self.processed_events = processed_events
        self.audit = AuditEmitter(audit, component="fulfillment")

        self.router = WebhookRouter()
        self._register_handlers()

        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str):
        return self._base_logger.bind(component="fulfillment", correlation_id=correlation_id)

    def _register_handlers(self):

        @self.router.register(CHECKOUT_COMPLETED)
        async def handle_checkout_completed(event, event_id, correlation_id):
            return await self._on_checkout_completed(event, event_id, correlation_id)

        @self.router.register(ASYNC_PAYMENT_SUCCEEDED)
        async def handle_async_payment(event, event_id, correlation_id):
            return await self._on_checkout_completed(event, event_id, correlation_id)

        @self.router.register(CHECKOUT_EXPIRED)
        async def handle_session_expired(event, event_id, correlation_id):
            return await self._on_session_expired(event, event_id, correlation_id)

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    async def handle(self, payload: bytes, signature: Optional[str]) -> WebhookAck:
        """
        Verify, deduplicate and dispatch one delivery.

        Raises WebhookRejectedError (400), WebhookVerificationFaultError (503)
        or StoreUnavailableError (503). Everything else is acknowledged.
        The ledger only short-circuits redeliveries; the session claim is
        what keeps fulfillment at most once.
        """
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id)

        try:
            event = await self.gateway.verify_event(payload, signature)
        except WebhookRejectedError as e:
            log.warning("webhook_signature_invalid", error=e.detail, payload_bytes=len(payload))
            await self.audit.emit(
                AuditEventType.WEBHOOK_REJECTED, "webhook", "unverified", correlation_id,
                severity="WARN", metadata={"reason": e.detail},
            )
            raise

        event_type = event.get("type", "unknown")
        event_id = event.get("id")
        session = _event_object(event)
        correlation_id = (session.get("metadata") or {}).get("correlation_id") or correlation_id
        log = self._get_logger(correlation_id).bind(event_id=event_id, event_type=event_type)

        log.info("webhook_received")

        if not self.router.handles(event_type):
            log.info("webhook_ignored")
            return WebhookAck(status=WebhookStatus.IGNORED, event_id=event_id, event_type=event_type)

        if event_id:
            if await self.processed_events.is_recorded(event_id):
                log.info("webhook_duplicate")
                await self.audit.emit(
                    AuditEventType.WEBHOOK_DUPLICATE, "webhook", event_id, correlation_id,
                    metadata={"event_type": event_type},
                )
                return WebhookAck(status=WebhookStatus.DUPLICATE, event_id=event_id,
                                  event_type=event_type, session_id=session.get("id"))
        else:
            log.warning("webhook_without_event_id")

        # Handlers only raise before touching inventory, and nothing has been
        # recorded yet, so a redelivery after a failure is processed again.
        ack = await self.router.route(event, event_id or f"anonymous:{correlation_id}", correlation_id)
        ack.event_type = event_type

        if event_id:
            try:
                await self.processed_events.try_record(event_id)
            except StoreUnavailableError as e:
                # Already applied; a redelivery stops at the session claim.
                log.warning("webhook_ledger_write_failed", error=e.detail)

        log.info("webhook_processed", status=ack.status.value)
        return ack

    # =========================================================================
    # CHECKOUT COMPLETED
    # =========================================================================

    async def _on_checkout_completed(self, event: Dict[str, Any], event_id: str, correlation_id: str) -> WebhookAck:
        log = self._get_logger(correlation_id).bind(event_id=event_id)
        session = _event_object(event)
        session_id = session.get("id")

        if not session_id:
            log.error("checkout_completed_without_session")
            await self.audit.emit(
                AuditEventType.MANIFEST_UNREADABLE, "webhook", event_id, correlation_id,
                severity="ERROR", metadata={"reason": "event carries no session id"},
            )
            return WebhookAck(status=WebhookStatus.MANIFEST_UNREADABLE, event_id=event_id)

        log = log.bind(session_id=session_id)

        if session.get("payment_status") == "unpaid":
            # Delayed payment method; async_payment_succeeded will follow.
            log.info("checkout_awaiting_payment")
            return WebhookAck(status=WebhookStatus.IGNORED, event_id=event_id, session_id=session_id)

        lines = await self._resolve_manifest(session, session_id, event_id, correlation_id, log)
        if isinstance(lines, WebhookAck):
            return lines

        outcomes = await self._apply(lines, session_id, correlation_id, log)

        all_applied = all(o.status == LineStatus.DECREMENTED for o in outcomes)
        status = WebhookStatus.FULFILLED if all_applied else WebhookStatus.PARTIAL

        await self.audit.emit(
            AuditEventType.ORDER_FULFILLED, "checkout_session", session_id, correlation_id,
            severity="INFO" if all_applied else "WARN",
            metadata={
                "event_id": event_id,
                "status": status.value,
                "lines": [o.model_dump(mode="json") for o in outcomes],
            },
        )
        log.info("order_fulfilled",
                 status=status.value,
                 lines=len(outcomes),
                 failed_lines=sum(1 for o in outcomes if o.status != LineStatus.DECREMENTED))

        return WebhookAck(status=status, event_id=event_id, session_id=session_id, lines=outcomes)

    async def _resolve_manifest(self, session, session_id, event_id, correlation_id, log):
        """
        Returns the manifest lines to apply, or a terminal WebhookAck when
        there is nothing (more) to do for this session.
        """
        order = await self.orders.claim_for_fulfillment(session_id, event_id)
        if order is not None:
            log.info("pending_order_claimed", order_id=order.order_id)
            return order.lines

        existing = await self.orders.get_by_session(session_id)
        if existing is not None:
            log.info("order_not_pending",
                     order_id=existing.order_id,
                     order_status=existing.status.value,
                     fulfilled_by_event=existing.fulfilled_by_event)
            if existing.status == OrderStatus.EXPIRED:
                await self.audit.emit(
                    AuditEventType.PAID_AFTER_EXPIRY, "checkout_session", session_id, correlation_id,
                    severity="ERROR", metadata={"order_id": existing.order_id, "event_id": event_id},
                )
            return WebhookAck(status=WebhookStatus.DUPLICATE, event_id=event_id, session_id=session_id)

        # No order record: fall back to the manifest carried in metadata, with
        # the session id itself as the fulfillment key.
        log.warning("pending_order_missing_using_metadata")
        if not await self.processed_events.try_record(f"session:{session_id}"):
            log.info("session_already_fulfilled")
            return WebhookAck(status=WebhookStatus.DUPLICATE, event_id=event_id, session_id=session_id)

        try:
            return decode_manifest(session.get("metadata"))
        except ManifestError as e:
            log.error("manifest_unreadable", error=str(e))
            await self.audit.emit(
                AuditEventType.MANIFEST_UNREADABLE, "checkout_session", session_id, correlation_id,
                severity="ERROR",
                metadata={"reason": str(e), "event_id": event_id,
                          "amount_total": session.get("amount_total"),
                          "customer_email": session.get("customer_email")},
            )
            return WebhookAck(status=WebhookStatus.MANIFEST_UNREADABLE, event_id=event_id, session_id=session_id)

    async def _apply(self, lines: List[ManifestLine], session_id: str, correlation_id: str, log) -> List[LineOutcome]:
        """Decrement each line independently; one bad line never stops the rest."""
        outcomes: List[LineOutcome] = []

        for line in lines:
            line_log = log.bind(product_id=line.product_id, quantity=line.quantity)
            try:
                change = await self.catalog.decrement_inventory(line.product_id, line.quantity)
            except Exception as e:
                error = e.detail if isinstance(e, StoreUnavailableError) else str(e)
                line_log.error("fulfillment_line_failed", error=error)
                await self.audit.emit(
                    AuditEventType.LINE_FAILED, "product", line.product_id, correlation_id,
                    severity="ERROR",
                    metadata={"session_id": session_id, "quantity": line.quantity, "error": error},
                )
                outcomes.append(LineOutcome(product_id=line.product_id, quantity=line.quantity,
                                            status=LineStatus.FAILED, error=error))
                continue

            if change is None:
                line_log.warning("fulfillment_line_missing")
                await self.audit.emit(
                    AuditEventType.PRODUCT_MISSING, "product", line.product_id, correlation_id,
                    severity="WARN", metadata={"session_id": session_id, "quantity": line.quantity},
                )
                outcomes.append(LineOutcome(product_id=line.product_id, quantity=line.quantity,
                                            status=LineStatus.MISSING))
                continue

            if change.shortfall:
                line_log.warning("fulfillment_stock_shortfall",
                                 previous_count=change.previous_count,
                                 shortfall=change.shortfall)
                await self.audit.emit(
                    AuditEventType.STOCK_SHORTFALL, "product", line.product_id, correlation_id,
                    severity="WARN",
                    metadata={"session_id": session_id, "requested": line.quantity,
                              "previous_count": change.previous_count, "shortfall": change.shortfall},
                )
            else:
                line_log.info("fulfillment_line_applied", remaining=change.new_count)

            outcomes.append(LineOutcome(product_id=line.product_id, quantity=line.quantity,
                                        status=LineStatus.DECREMENTED, remaining=change.new_count,
                                        shortfall=change.shortfall))

        return outcomes

    # =========================================================================
    # SESSION EXPIRED
    # =========================================================================

    async def _on_session_expired(self, event: Dict[str, Any], event_id: str, correlation_id: str) -> WebhookAck:
        log = self._get_logger(correlation_id).bind(event_id=event_id)
        session_id = _event_object(event).get("id")
        if not session_id:
            return WebhookAck(status=WebhookStatus.IGNORED, event_id=event_id)

        order = await self.orders.mark_expired(session_id)
        if order is not None:
            await self.audit.emit(
                AuditEventType.ORDER_EXPIRED, "order", order.order_id, correlation_id,
                metadata={"session_id": session_id},
            )
        log.info("session_expired", session_id=session_id, order_expired=order is not None)
        return WebhookAck(status=WebhookStatus.EXPIRED, event_id=event_id, session_id=session_id)


def _event_object(event: Dict[str, Any]) -> Dict[str, Any]:
    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    return obj if isinstance(obj, dict) else {}
