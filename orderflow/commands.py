"""
orderflow: order commands (write side)

create_order
  1. Validate the request and read every product (price and stock)
  2. In one transaction:
       insert the order + lines (PENDING)
       reserve stock per line with the atomic conditional update
       append OrderCreated to the outbox
  3. Publish the outbox entry; if the broker is down the order is still
     created and the relay publishes the event later

update_status
  Enforces the forward-only state machine. The status write is a
  compare-and-set on the status it was validated against. A cancellation
  gives back the reserved stock in the same transaction that stores the new
  status and appends OrderStatusChanged to the outbox.
"""

import logging
from decimal import Decimal
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from . import inventory, orders, outbox, products
from .broker import Broker, QueueName
from .errors import (
    BadRequestError,
    InsufficientStockError,
    InvalidStatusTransitionError,
    NotFoundError,
)
from .events import OrderCreated, OrderCreatedItem, OrderStatusChanged
from .models import CENT, Order, OrderItemInput, OrderStatus

logger = logging.getLogger(__name__)


def _validate_items(items: Sequence[OrderItemInput]) -> None:
    if not items:
        raise BadRequestError("Order must contain at least one item")
    seen: set[str] = set()
    for item in items:
        if item.quantity <= 0:
            raise BadRequestError(f"Quantity for product {item.product_id} must be greater than zero")
        if item.product_id in seen:
            raise BadRequestError(f"Product {item.product_id} appears more than once in the order")
        seen.add(item.product_id)


async def create_order(
    session: AsyncSession,
    broker: Broker,
    user_id: str,
    items: Sequence[OrderItemInput],
) -> Order:
    _validate_items(items)

    # ── Step 1: price and stock check ───────────────
    lines: list[dict] = []
    total = Decimal("0")
    for item in items:
        product = await products.get_product(session, item.product_id)
        if product is None:
            raise NotFoundError(f"Product {item.product_id} not found")
        if product.stock < item.quantity:
            raise InsufficientStockError(product.id, requested=item.quantity, available=product.stock)
        total += product.price * item.quantity
        lines.append(
            {
                "product_id": product.id,
                "quantity": item.quantity,
                "price_at_purchase": product.price,
            }
        )
    total = total.quantize(CENT)

    # ── Step 2: order + reservation + outbox ────────
    try:
        order_id = await orders.insert_order(session, user_id, lines, total)
        for line in lines:
            await inventory.reserve_stock(session, order_id, line["product_id"], line["quantity"])
        event = OrderCreated(
            order_id=order_id,
            user_id=str(user_id),
            items=[
                OrderCreatedItem(product_id=line["product_id"], quantity=line["quantity"])
                for line in lines
            ],
        )
        entry = await outbox.append(session, QueueName.ORDER_CREATED.value, event)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info("Created order %s for user %s (total=%s)", order_id, user_id, total)

    # ── Step 3: publish ─────────────────────────────
    published = await outbox.publish(session, broker, entry)
    if not published:
        logger.warning("Order %s created but OrderCreated is pending in the outbox", order_id)

    order = await orders.get_order(session, order_id)
    order.event_pending = not published
    return order


async def update_status(
    session: AsyncSession,
    broker: Broker,
    order_id: str,
    new_status: OrderStatus,
) -> Order:
    new_status = OrderStatus(new_status)

    # The status we validated against may be stale by the time we write, so
    # the write is conditional on it. Losing that race means re-reading and
    # validating again; the state machine only moves forward, so this ends.
    while True:
        order = await orders.get_order(session, order_id)
        if order is None:
            raise NotFoundError("Order not found")

        old_status = order.status
        if old_status == new_status:
            return order
        if not old_status.can_transition_to(new_status):
            raise InvalidStatusTransitionError(old_status.value, new_status.value)

        try:
            updated = await orders.update_order_status(
                session, order.id, new_status, expected=old_status
            )
            if updated is None:
                await session.rollback()
                logger.info(
                    "Order %s moved away from %s concurrently, re-checking", order.id, old_status.value
                )
                continue
            if new_status == OrderStatus.CANCELLED:
                for line in order.items:
                    await inventory.release_stock(session, order.id, line.product_id, line.quantity)
            event = OrderStatusChanged(order_id=order.id, old_status=old_status, new_status=new_status)
            entry = await outbox.append(session, QueueName.ORDER_STATUS_CHANGED.value, event)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        break

    logger.info("Order %s status changed %s -> %s", order.id, old_status.value, new_status.value)

    published = await outbox.publish(session, broker, entry)
    if not published:
        logger.warning("Order %s status changed but OrderStatusChanged is pending in the outbox", order.id)
    updated.event_pending = not published
    return updated
