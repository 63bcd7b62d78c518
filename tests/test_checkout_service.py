"""Tests for checkout session creation."""
import time
from decimal import Decimal

import pytest
import stripe

from pipeline.checkout_service import CheckoutService
from pipeline.errors import CheckoutValidationError, GatewayTimeoutError, GatewayUnavailableError
from pipeline.manifest import METADATA_KEY, PARTS_KEY, decode_manifest
from pipeline.payment_gateway import StripeGateway
from schemas import AuditEventType, CartLine, OrderStatus, to_minor_units


def _cart(*lines):
    return [CartLine(id=pid, name=f"Item {pid}", price=Decimal(str(price)), quantity=qty)
            for pid, qty, price in lines]


class FailingOrderRepository:
    async def create(self, order):
        raise RuntimeError("orders table unavailable")


@pytest.mark.asyncio
async def test_empty_cart_never_reaches_gateway(checkout, gateway):
    with pytest.raises(CheckoutValidationError) as exc:
        await checkout.create_session([], "a@b.com")

    assert exc.value.status_code == 400
    assert exc.value.public_message == "Cart is empty."
    assert gateway.call_count == 0


@pytest.mark.asyncio
async def test_session_created_with_pending_order(checkout, gateway, orders, audit):
    result = await checkout.create_session(_cart(("P1", 2, 5000)), "a@b.com")

    assert result.session_id == "cs_test_1"
    assert result.checkout_url.endswith("cs_test_1")
    assert result.amount_total == 2 * 500000
    assert result.currency == "pkr"

    order = await orders.get_by_session("cs_test_1")
    assert order is not None
    assert order.status == OrderStatus.PENDING
    assert order.order_id == result.order_id
    assert order.email == "a@b.com"
    assert [(l.product_id, l.quantity) for l in order.lines] == [("P1", 2)]

    created = [e for e in audit.entries if e.event_type == AuditEventType.SESSION_CREATED]
    assert len(created) == 1
    assert created[0].correlation_id == result.correlation_id


@pytest.mark.asyncio
async def test_gateway_receives_line_items_in_minor_units(checkout, gateway):
    await checkout.create_session(_cart(("P1", 1, "49.99"), ("P2", 3, "0.1")), None)

    call = gateway.calls[0]
    amounts = [li["price_data"]["unit_amount"] for li in call["line_items"]]
    assert amounts == [4999, 10]
    assert [li["quantity"] for li in call["line_items"]] == [1, 3]
    assert call["line_items"][0]["price_data"]["currency"] == "pkr"
    assert call["line_items"][0]["price_data"]["product_data"]["name"] == "Item P1"
    assert call["customer_email"] is None


@pytest.mark.asyncio
async def test_redirect_urls_point_at_client(checkout, gateway):
    await checkout.create_session(_cart(("P1", 1, 10)), "a@b.com")

    call = gateway.calls[0]
    assert call["success_url"] == "http://shop.test/checkout?success=true&session_id={CHECKOUT_SESSION_ID}"
    assert call["cancel_url"] == "http://shop.test/checkout?canceled=true"


@pytest.mark.asyncio
async def test_metadata_carries_manifest_and_correlation_id(checkout, gateway):
    result = await checkout.create_session(_cart(("P1", 2, 10), ("P2", 1, 20)), "a@b.com")

    metadata = gateway.calls[0]["metadata"]
    assert metadata["correlation_id"] == result.correlation_id
    assert METADATA_KEY in metadata
    assert [(l.product_id, l.quantity) for l in decode_manifest(metadata)] == [("P1", 2), ("P2", 1)]


@pytest.mark.asyncio
async def test_large_cart_manifest_is_chunked(checkout, gateway):
    lines = [(f"product-{i:024d}", 99, 10) for i in range(50)]
    await checkout.create_session(_cart(*lines), "a@b.com")

    metadata = gateway.calls[0]["metadata"]
    assert PARTS_KEY in metadata
    assert all(len(v) <= 500 for v in metadata.values())
    decoded = decode_manifest(metadata)
    assert [(l.product_id, l.quantity) for l in decoded] == [(pid, qty) for pid, qty, _ in lines]


@pytest.mark.asyncio
async def test_order_persist_failure_still_returns_session(gateway, audit):
    service = CheckoutService(gateway=gateway, orders=FailingOrderRepository(), audit=audit)

    result = await service.create_session(_cart(("P1", 1, 10)), "a@b.com")

    assert result.session_id == "cs_test_1"
    assert result.order_id is None
    failures = [e for e in audit.entries if e.event_type == AuditEventType.ORDER_PERSIST_FAILED]
    assert len(failures) == 1
    assert failures[0].severity == "ERROR"


def test_to_minor_units_avoids_float_noise():
    assert to_minor_units(0.1 + 0.2) == 30
    assert to_minor_units("19.995") == 2000
    assert to_minor_units(5000) == 500000
    assert to_minor_units(Decimal("12.5"), factor=1) == 13


# =============================================================================
# Stripe adapter
# =============================================================================

@pytest.mark.asyncio
async def test_stripe_error_maps_to_gateway_unavailable(monkeypatch):
    def fail(**kwargs):
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.checkout.Session, "create", fail)
    gateway = StripeGateway(api_key="sk_test", webhook_secret="whsec")

    with pytest.raises(GatewayUnavailableError) as exc:
        await gateway.create_checkout_session([], None, {}, "http://s", "http://c")

    assert exc.value.status_code == 500
    assert exc.value.public_message == "Checkout session creation failed."
    assert "network down" not in exc.value.public_message


@pytest.mark.asyncio
async def test_slow_gateway_times_out(monkeypatch):
    def slow(**kwargs):
        time.sleep(0.5)

    monkeypatch.setattr(stripe.checkout.Session, "create", slow)
    gateway = StripeGateway(api_key="sk_test", webhook_secret="whsec", timeout_seconds=0.05)

    with pytest.raises(GatewayTimeoutError) as exc:
        await gateway.create_checkout_session([], None, {}, "http://s", "http://c")

    assert exc.value.status_code == 503
    assert exc.value.retryable is True


@pytest.mark.asyncio
async def test_session_create_passes_checkout_params(monkeypatch):
    captured = {}

    class FakeSession:
        id = "cs_live_1"
        url = "https://checkout.stripe.com/c/pay/cs_live_1"

    def create(**kwargs):
        captured.update(kwargs)
        return FakeSession()

    monkeypatch.setattr(stripe.checkout.Session, "create", create)
    gateway = StripeGateway(api_key="sk_test", webhook_secret="whsec")

    session = await gateway.create_checkout_session(
        [{"quantity": 1}], "a@b.com", {"cart_items": "[]"}, "http://s", "http://c"
    )

    assert session.id == "cs_live_1"
    assert captured["mode"] == "payment"
    assert captured["api_key"] == "sk_test"
    assert captured["customer_email"] == "a@b.com"
    assert captured["metadata"] == {"cart_items": "[]"}
