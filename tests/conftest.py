"""Pytest fixtures: in-memory stores, a counting gateway and webhook signing."""

import hashlib
import hmac
import json
import time
from typing import Any, Dict, List, Optional

import pytest

from pipeline.checkout_service import CheckoutService
from pipeline.fulfillment import CHECKOUT_COMPLETED, FulfillmentWebhookHandler
from pipeline.payment_gateway import GatewaySession, StripeGateway
from storage import (
    InMemoryAuditLog,
    InMemoryCatalogStore,
    InMemoryOrderRepository,
    InMemoryProcessedEventStore,
)

WEBHOOK_SECRET = "whsec_test_secret"


class CountingGateway(StripeGateway):
    """
    Real Stripe signature verification, fake session creation.

    Every create_checkout_session call is recorded so tests can assert the
    gateway was (or was not) reached.
    """

    def __init__(self, webhook_secret: Optional[str] = WEBHOOK_SECRET, **kwargs):
        super().__init__(api_key="sk_test_unused", webhook_secret=webhook_secret, **kwargs)
        self.calls: List[Dict[str, Any]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def create_checkout_session(self, line_items, customer_email, metadata, success_url, cancel_url):
        self.calls.append({
            "line_items": line_items,
            "customer_email": customer_email,
            "metadata": metadata,
            "success_url": success_url,
            "cancel_url": cancel_url,
        })
        session_id = f"cs_test_{len(self.calls)}"
        return GatewaySession(id=session_id, url=f"https://checkout.stripe.com/c/pay/{session_id}")


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header value for payload."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def make_event(
    session_id: Optional[str],
    event_id: Optional[str] = "evt_1",
    event_type: str = CHECKOUT_COMPLETED,
    metadata: Optional[Dict[str, str]] = None,
    payment_status: str = "paid",
) -> bytes:
    session: Dict[str, Any] = {
        "id": session_id,
        "object": "checkout.session",
        "payment_status": payment_status,
        "amount_total": 1000,
        "customer_email": "a@b.com",
        "metadata": metadata or {},
    }
    event: Dict[str, Any] = {"object": "event", "type": event_type, "data": {"object": session}}
    if event_id is not None:
        event["id"] = event_id
    return json.dumps(event).encode("utf-8")


@pytest.fixture
def catalog() -> InMemoryCatalogStore:
    catalog = InMemoryCatalogStore()

    catalog.add_product("P1", inventory_count=10, title="Lawn Kurta", price_minor_units=500000)
    catalog.add_product("P2", inventory_count=5, title="Embroidered Dupatta", price_minor_units=250000)
    catalog.add_product("P3", inventory_count=0, title="Silk Shalwar")  # Sold out

    return catalog


@pytest.fixture
def orders() -> InMemoryOrderRepository:
    return InMemoryOrderRepository()


@pytest.fixture
def processed_events() -> InMemoryProcessedEventStore:
    return InMemoryProcessedEventStore()


@pytest.fixture
def audit() -> InMemoryAuditLog:
    return InMemoryAuditLog()


@pytest.fixture
def gateway() -> CountingGateway:
    return CountingGateway()


@pytest.fixture
def checkout(gateway, orders, audit) -> CheckoutService:
    return CheckoutService(gateway=gateway, orders=orders, audit=audit, client_url="http://shop.test")


@pytest.fixture
def fulfillment(gateway, catalog, orders, processed_events, audit) -> FulfillmentWebhookHandler:
    return FulfillmentWebhookHandler(
        gateway=gateway,
        catalog=catalog,
        orders=orders,
        processed_events=processed_events,
        audit=audit,
    )
