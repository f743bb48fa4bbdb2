import json
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from orderflow import commands, orders, outbox, products
from orderflow.broker import QueueName
from orderflow.errors import (
    BadRequestError,
    InsufficientStockError,
    InvalidStatusTransitionError,
    NotFoundError,
)
from orderflow.models import OrderItemInput, OrderStatus, Product

ORDER_CREATED = QueueName.ORDER_CREATED.value
STATUS_CHANGED = QueueName.ORDER_STATUS_CHANGED.value


def item(product, quantity):
    return OrderItemInput(product_id=product.id, quantity=quantity)


async def stock_of(session, product):
    return (await products.get_product(session, product.id)).stock


# ── create_order ─────────────────────────────────


async def test_create_order_totals_reserves_and_publishes(session, broker, product_a, product_b):
    order = await commands.create_order(session, broker, "user-1", [item(product_a, 2), item(product_b, 1)])

    assert order.status == OrderStatus.PENDING
    assert order.total_amount == Decimal("25.00")
    assert order.total_amount == order.lines_total()
    assert [(line.name, line.quantity, line.price_at_purchase) for line in order.items] == [
        ("Widget", 2, Decimal("10.00")),
        ("Gadget", 1, Decimal("5.00")),
    ]
    assert order.event_pending is False
    assert await stock_of(session, product_a) == 8
    assert await stock_of(session, product_b) == 4

    [body] = broker.bodies(ORDER_CREATED)
    event = json.loads(body)
    assert event["orderId"] == order.id
    assert event["userId"] == "user-1"
    assert event["items"] == [
        {"productId": product_a.id, "quantity": 2},
        {"productId": product_b.id, "quantity": 1},
    ]
    assert "timestamp" in event
    assert await outbox.load_pending(session) == []


async def test_create_order_for_entire_stock(session, broker, product_b):
    await commands.create_order(session, broker, "user-1", [item(product_b, 5)])

    assert await stock_of(session, product_b) == 0


async def test_create_order_insufficient_stock_has_no_side_effects(session, broker, product_b):
    with pytest.raises(InsufficientStockError) as exc_info:
        await commands.create_order(session, broker, "user-1", [item(product_b, 6)])

    assert exc_info.value.shortfall == 1
    assert await stock_of(session, product_b) == 5
    assert (await orders.list_orders(session, 1, 10))[1] == 0
    assert broker.bodies(ORDER_CREATED) == []


async def test_create_order_second_line_short_rolls_back_first(session, broker, product_a, product_b):
    with pytest.raises(InsufficientStockError):
        await commands.create_order(session, broker, "user-1", [item(product_a, 2), item(product_b, 9)])

    assert await stock_of(session, product_a) == 10


@pytest.mark.parametrize(
    "build_items",
    [
        lambda p: [],
        lambda p: [OrderItemInput(product_id=p.id, quantity=0)],
        lambda p: [OrderItemInput(product_id=p.id, quantity=-2)],
        lambda p: [OrderItemInput(product_id=p.id, quantity=1), OrderItemInput(product_id=p.id, quantity=1)],
    ],
    ids=["empty", "zero-quantity", "negative-quantity", "duplicate-product"],
)
async def test_create_order_rejects_invalid_items(session, broker, product_a, build_items):
    with pytest.raises(BadRequestError):
        await commands.create_order(session, broker, "user-1", build_items(product_a))

    assert await stock_of(session, product_a) == 10


async def test_create_order_unknown_product(session, broker, product_a):
    with pytest.raises(NotFoundError):
        await commands.create_order(
            session, broker, "user-1", [item(product_a, 1), OrderItemInput(product_id="missing", quantity=1)]
        )

    assert await stock_of(session, product_a) == 10


async def test_create_order_price_is_frozen_at_purchase(session, broker, product_a):
    order = await commands.create_order(session, broker, "user-1", [item(product_a, 1)])
    await products.update_product(session, product_a.id, {"price": Decimal("99.00")})

    reloaded = await orders.get_order(session, order.id)

    assert reloaded.items[0].price_at_purchase == Decimal("10.00")
    assert reloaded.total_amount == Decimal("10.00")


async def test_create_order_loses_race_for_last_unit(session, broker, product_b, monkeypatch):
    await products.update_stock(session, product_b.id, 0)

    async def stale_read(session, product_id):
        # What a concurrent request saw before the stock was taken.
        return Product(id=product_b.id, name="Gadget", price=Decimal("5.00"), stock=1)

    monkeypatch.setattr(products, "get_product", stale_read)

    with pytest.raises(InsufficientStockError):
        await commands.create_order(session, broker, "user-1", [item(product_b, 1)])

    monkeypatch.undo()
    assert await stock_of(session, product_b) == 0
    assert (await orders.list_orders(session, 1, 10))[1] == 0


async def test_create_order_when_broker_is_down_is_degraded(session, broker, product_a):
    broker.fail_publish = True

    order = await commands.create_order(session, broker, "user-1", [item(product_a, 1)])

    assert order.event_pending is True
    assert await orders.get_order(session, order.id) is not None
    assert await stock_of(session, product_a) == 9
    [pending] = await outbox.load_pending(session)
    assert pending.queue == ORDER_CREATED

    broker.fail_publish = False
    assert await outbox.relay_pending(session, broker) == 1
    assert json.loads(broker.bodies(ORDER_CREATED)[0])["orderId"] == order.id
    assert await outbox.load_pending(session) == []


async def test_create_order_survives_outbox_bookkeeping_failure(session, broker, product_a, monkeypatch):
    async def failing_mark(session, entry_id):
        raise OperationalError("UPDATE outbox", {"id": entry_id}, Exception("database is locked"))

    monkeypatch.setattr(outbox, "mark_published", failing_mark)

    order = await commands.create_order(session, broker, "user-1", [item(product_a, 1)])
    monkeypatch.undo()

    assert order.event_pending is True
    assert order.status == OrderStatus.PENDING
    assert len(broker.bodies(ORDER_CREATED)) == 1
    assert await stock_of(session, product_a) == 9
    assert len(await outbox.load_pending(session)) == 1


async def test_update_status_survives_outbox_bookkeeping_failure(session, broker, product_a, monkeypatch):
    order = await commands.create_order(session, broker, "user-1", [item(product_a, 1)])

    async def failing_mark(session, entry_id):
        raise OperationalError("UPDATE outbox", {"id": entry_id}, Exception("database is locked"))

    monkeypatch.setattr(outbox, "mark_published", failing_mark)
    updated = await commands.update_status(session, broker, order.id, OrderStatus.PROCESSING)
    monkeypatch.undo()

    assert updated.status == OrderStatus.PROCESSING
    assert updated.event_pending is True
    assert len(broker.bodies(STATUS_CHANGED)) == 1


# ── update_status ────────────────────────────────


async def test_update_status_missing_order(session, broker):
    with pytest.raises(NotFoundError):
        await commands.update_status(session, broker, "missing", OrderStatus.PROCESSING)


async def test_update_status_publishes_status_change(session, broker, product_a):
    order = await commands.create_order(session, broker, "user-1", [item(product_a, 1)])

    updated = await commands.update_status(session, broker, order.id, OrderStatus.PROCESSING)

    assert updated.status == OrderStatus.PROCESSING
    [body] = broker.bodies(STATUS_CHANGED)
    event = json.loads(body)
    assert (event["orderId"], event["oldStatus"], event["newStatus"]) == (order.id, "PENDING", "PROCESSING")


async def test_forward_transitions_through_delivery(session, broker, product_a):
    order = await commands.create_order(session, broker, "user-1", [item(product_a, 1)])

    for status in (OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED):
        order = await commands.update_status(session, broker, order.id, status)

    assert order.status == OrderStatus.DELIVERED
    assert order.total_amount == Decimal("10.00")
    assert len(broker.bodies(STATUS_CHANGED)) == 3


@pytest.mark.parametrize(
    "path,illegal",
    [
        ([OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED], OrderStatus.PENDING),
        ([OrderStatus.PROCESSING, OrderStatus.SHIPPED], OrderStatus.CANCELLED),
        ([], OrderStatus.DELIVERED),
        ([OrderStatus.CANCELLED], OrderStatus.PROCESSING),
    ],
)
async def test_illegal_transitions_are_rejected(session, broker, product_a, path, illegal):
    order = await commands.create_order(session, broker, "user-1", [item(product_a, 1)])
    for status in path:
        await commands.update_status(session, broker, order.id, status)

    with pytest.raises(InvalidStatusTransitionError):
        await commands.update_status(session, broker, order.id, illegal)


async def test_same_status_is_a_noop(session, broker, product_a):
    order = await commands.create_order(session, broker, "user-1", [item(product_a, 1)])

    unchanged = await commands.update_status(session, broker, order.id, OrderStatus.PENDING)

    assert unchanged.status == OrderStatus.PENDING
    assert broker.bodies(STATUS_CHANGED) == []


async def test_cancel_restores_stock(session, broker, product_a, product_b):
    order = await commands.create_order(session, broker, "user-1", [item(product_a, 2), item(product_b, 1)])

    cancelled = await commands.update_status(session, broker, order.id, OrderStatus.CANCELLED)

    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.total_amount == Decimal("25.00")
    assert await stock_of(session, product_a) == 10
    assert await stock_of(session, product_b) == 5


async def test_cancel_twice_restores_once(session, broker, product_a):
    order = await commands.create_order(session, broker, "user-1", [item(product_a, 3)])

    await commands.update_status(session, broker, order.id, OrderStatus.CANCELLED)
    await commands.update_status(session, broker, order.id, OrderStatus.CANCELLED)

    assert await stock_of(session, product_a) == 10
    assert len(broker.bodies(STATUS_CHANGED)) == 1


def serve_stale_order_once(monkeypatch, stale):
    """Make the next order read return a snapshot someone else has since changed."""
    real_get_order = orders.get_order
    served = []

    async def get_order(session, order_id):
        if not served:
            served.append(order_id)
            return stale
        return await real_get_order(session, order_id)

    monkeypatch.setattr(orders, "get_order", get_order)


async def test_update_status_does_not_resurrect_cancelled_order(session, broker, product_a, monkeypatch):
    order = await commands.create_order(session, broker, "user-1", [item(product_a, 4)])
    await commands.update_status(session, broker, order.id, OrderStatus.CANCELLED)
    assert await stock_of(session, product_a) == 10

    serve_stale_order_once(monkeypatch, order)
    with pytest.raises(InvalidStatusTransitionError):
        await commands.update_status(session, broker, order.id, OrderStatus.PROCESSING)
    monkeypatch.undo()

    assert (await orders.get_order(session, order.id)).status == OrderStatus.CANCELLED
    assert await stock_of(session, product_a) == 10
    assert [json.loads(body)["newStatus"] for body in broker.bodies(STATUS_CHANGED)] == ["CANCELLED"]


async def test_cancel_from_stale_pending_rechecks_current_status(session, broker, product_a, monkeypatch):
    order = await commands.create_order(session, broker, "user-1", [item(product_a, 4)])
    await commands.update_status(session, broker, order.id, OrderStatus.PROCESSING)

    serve_stale_order_once(monkeypatch, order)
    cancelled = await commands.update_status(session, broker, order.id, OrderStatus.CANCELLED)
    monkeypatch.undo()

    assert cancelled.status == OrderStatus.CANCELLED
    assert await stock_of(session, product_a) == 10
    last = json.loads(broker.bodies(STATUS_CHANGED)[-1])
    assert (last["oldStatus"], last["newStatus"]) == ("PROCESSING", "CANCELLED")


async def test_stale_cancel_after_shipping_releases_nothing(session, broker, product_a, monkeypatch):
    order = await commands.create_order(session, broker, "user-1", [item(product_a, 4)])
    for status in (OrderStatus.PROCESSING, OrderStatus.SHIPPED):
        await commands.update_status(session, broker, order.id, status)

    serve_stale_order_once(monkeypatch, order)
    with pytest.raises(InvalidStatusTransitionError):
        await commands.update_status(session, broker, order.id, OrderStatus.CANCELLED)
    monkeypatch.undo()

    assert (await orders.get_order(session, order.id)).status == OrderStatus.SHIPPED
    assert await stock_of(session, product_a) == 6


async def test_conditional_status_write_skips_moved_order(session, broker, product_a):
    order = await commands.create_order(session, broker, "user-1", [item(product_a, 1)])

    moved = await orders.update_order_status(
        session, order.id, OrderStatus.CANCELLED, expected=OrderStatus.PROCESSING
    )
    await session.rollback()

    assert moved is None
    assert (await orders.get_order(session, order.id)).status == OrderStatus.PENDING


async def test_stock_never_negative_over_create_cancel_sequence(session, broker, product_b):
    placed = []
    for _ in range(3):
        try:
            placed.append(await commands.create_order(session, broker, "user-1", [item(product_b, 2)]))
        except InsufficientStockError:
            pass
        assert await stock_of(session, product_b) >= 0

    assert len(placed) == 2
    assert await stock_of(session, product_b) == 1

    await commands.update_status(session, broker, placed[0].id, OrderStatus.CANCELLED)
    assert await stock_of(session, product_b) == 3


# ── product deletion vs. orders ──────────────────


@pytest.mark.parametrize(
    "path",
    [[], [OrderStatus.PROCESSING], [OrderStatus.PROCESSING, OrderStatus.SHIPPED]],
    ids=["pending", "processing", "shipped"],
)
async def test_delete_product_rejected_while_order_is_open(session, broker, product_a, path):
    order = await commands.create_order(session, broker, "user-1", [item(product_a, 1)])
    for status in path:
        await commands.update_status(session, broker, order.id, status)

    with pytest.raises(BadRequestError):
        await products.delete_product(session, product_a.id)

    assert await products.get_product(session, product_a.id) is not None


@pytest.mark.parametrize(
    "path",
    [
        [OrderStatus.CANCELLED],
        [OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED],
    ],
    ids=["cancelled", "delivered"],
)
async def test_delete_product_allowed_once_orders_are_finished(session, broker, product_a, path):
    order = await commands.create_order(session, broker, "user-1", [item(product_a, 2)])
    for status in path:
        await commands.update_status(session, broker, order.id, status)

    await products.delete_product(session, product_a.id)

    reloaded = await orders.get_order(session, order.id)
    assert reloaded.items[0].name == "Unknown Product"
    assert reloaded.items[0].price_at_purchase == Decimal("10.00")
    assert reloaded.total_amount == Decimal("20.00")
