"""Tests for the in-memory stores and catalog normalisation."""
from datetime import datetime, timedelta

import pytest

from schemas import (
    AuditEventType,
    AuditLogEntry,
    ManifestLine,
    OrderStatus,
    PendingOrder,
    Product,
)


def _order(session_id, email="a@b.com", created_at=None):
    return PendingOrder(
        order_id=PendingOrder.generate_order_id(session_id),
        session_id=session_id,
        email=email,
        lines=[ManifestLine(product_id="P1", quantity=1)],
        amount_total=500000,
        currency="pkr",
        created_at=created_at or datetime.utcnow(),
    )


def test_product_from_legacy_document():
    product = Product.from_document(
        {"_id": "665f1", "name": "Lawn Kurta", "price": "4999.50", "inventoryCount": 7, "sku": "LK-01"}
    )

    assert product.id == "665f1"
    assert product.title == "Lawn Kurta"
    assert product.price_minor_units == 499950
    assert product.inventory_count == 7
    assert product.is_available is True


def test_product_from_document_clamps_negative_stock():
    product = Product.from_document({"id": "P1", "title": "Shawl", "inventory_count": -4})

    assert product.inventory_count == 0
    assert product.sku == "P1"


def test_product_document_without_id_is_refused():
    with pytest.raises(ValueError):
        Product.from_document({"title": "No id"})


def test_order_id_is_stable_per_session():
    assert PendingOrder.generate_order_id("cs_1") == PendingOrder.generate_order_id("cs_1")
    assert PendingOrder.generate_order_id("cs_1") != PendingOrder.generate_order_id("cs_2")
    assert PendingOrder.generate_order_id("cs_1").startswith("ORD-")


@pytest.mark.asyncio
async def test_save_product_rejects_duplicate_sku(catalog):
    await catalog.save_product(Product(id="P9", title="New", sku="SKU-NEW", inventory_count=3))

    with pytest.raises(ValueError):
        await catalog.save_product(Product(id="P10", title="Clash", sku="SKU-NEW"))

    products = await catalog.get_products(["P9", "P10", "P1"])
    assert set(products) == {"P9", "P1"}


@pytest.mark.asyncio
async def test_decrement_unknown_product_returns_none(catalog):
    assert await catalog.decrement_inventory("P404", 1) is None


@pytest.mark.asyncio
async def test_order_created_once_per_session(orders):
    await orders.create(_order("cs_1"))

    with pytest.raises(ValueError):
        await orders.create(_order("cs_1"))


@pytest.mark.asyncio
async def test_claim_is_single_use(orders):
    await orders.create(_order("cs_1"))

    first = await orders.claim_for_fulfillment("cs_1", "evt_1")
    second = await orders.claim_for_fulfillment("cs_1", "evt_2")

    assert first.status == OrderStatus.FULFILLED
    assert first.fulfilled_by_event == "evt_1"
    assert second is None
    assert await orders.mark_expired("cs_1") is None


@pytest.mark.asyncio
async def test_orders_listed_newest_first(orders):
    now = datetime.utcnow()
    await orders.create(_order("cs_old", created_at=now - timedelta(days=2)))
    await orders.create(_order("cs_new", created_at=now))
    await orders.create(_order("cs_other", email="x@y.com"))

    listed = await orders.list_by_email("a@b.com")

    assert [o.session_id for o in listed] == ["cs_new", "cs_old"]
    assert len(await orders.list_by_email("a@b.com", limit=1)) == 1


@pytest.mark.asyncio
async def test_processed_event_ledger(processed_events):
    assert await processed_events.is_recorded("evt_1") is False
    assert await processed_events.try_record("evt_1") is True
    assert await processed_events.try_record("evt_1") is False
    assert await processed_events.is_recorded("evt_1") is True


@pytest.mark.asyncio
async def test_audit_recent_is_newest_first(audit):
    for i in range(3):
        await audit.append(AuditLogEntry(
            correlation_id="corr", event_type=AuditEventType.ORDER_FULFILLED,
            entity_type="order", entity_id=f"o{i}",
        ))

    recent = await audit.recent(limit=2)

    assert [e.entity_id for e in recent] == ["o2", "o1"]
    assert len(await audit.get_by_correlation_id("corr")) == 3


def test_audit_severity_is_validated():
    with pytest.raises(ValueError):
        AuditLogEntry(correlation_id="c", event_type=AuditEventType.ORDER_FULFILLED,
                      entity_type="order", entity_id="o1", severity="LOUD")
