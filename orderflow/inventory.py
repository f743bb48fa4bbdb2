"""
orderflow: inventory movement ledger

Stock changes caused by an order are recorded once per
(order_id, product_id, reason). The ledger row is claimed with
INSERT ... ON CONFLICT DO NOTHING in the same transaction as the stock
update, so a redelivered message or a repeated cancellation finds the
existing row and leaves stock untouched.

    reserve_stock  → reason "order_created",   delta = -quantity
    release_stock  → reason "order_cancelled", delta = +quantity
                     (only if a reservation for the same pair exists)
"""

import logging
from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import products
from .events import ORDER_CANCELLED_REASON, ORDER_CREATED_REASON

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockMovement:
    order_id: str
    product_id: str
    reason: str
    delta: int
    old_stock: int
    new_stock: int
    applied: bool


async def _load_movement(
    session: AsyncSession, order_id: str, product_id: str, reason: str
) -> StockMovement | None:
    result = await session.execute(
        text("""
            SELECT order_id, product_id, reason, delta, old_stock, new_stock
            FROM inventory_movements
            WHERE order_id = :order_id AND product_id = :product_id AND reason = :reason
        """),
        {"order_id": order_id, "product_id": product_id, "reason": reason},
    )
    row = result.fetchone()
    if not row:
        return None
    return StockMovement(
        order_id=row.order_id,
        product_id=row.product_id,
        reason=row.reason,
        delta=row.delta,
        old_stock=row.old_stock,
        new_stock=row.new_stock,
        applied=False,
    )


async def _apply_movement(
    session: AsyncSession, order_id: str, product_id: str, reason: str, delta: int
) -> StockMovement:
    result = await session.execute(
        text("""
            INSERT INTO inventory_movements (order_id, product_id, reason, delta)
            VALUES (:order_id, :product_id, :reason, :delta)
            ON CONFLICT (order_id, product_id, reason) DO NOTHING
            RETURNING id
        """),
        {"order_id": order_id, "product_id": product_id, "reason": reason, "delta": delta},
    )
    movement_id = result.scalar_one_or_none()
    if movement_id is None:
        existing = await _load_movement(session, order_id, product_id, reason)
        logger.info(
            "Stock movement %s for order %s / product %s already applied, skipping",
            reason, order_id, product_id,
        )
        return existing

    # Raises on a missing product or short stock; the caller's rollback
    # discards the claimed ledger row with it.
    old_stock, new_stock = await products.adjust_stock(session, product_id, delta)

    await session.execute(
        text("""
            UPDATE inventory_movements
            SET old_stock = :old_stock, new_stock = :new_stock
            WHERE id = :id
        """),
        {"old_stock": old_stock, "new_stock": new_stock, "id": movement_id},
    )
    return StockMovement(
        order_id=order_id,
        product_id=product_id,
        reason=reason,
        delta=delta,
        old_stock=old_stock,
        new_stock=new_stock,
        applied=True,
    )


async def reserve_stock(
    session: AsyncSession, order_id: str, product_id: str, quantity: int
) -> StockMovement:
    return await _apply_movement(session, order_id, product_id, ORDER_CREATED_REASON, -quantity)


async def release_stock(
    session: AsyncSession, order_id: str, product_id: str, quantity: int
) -> StockMovement | None:
    """Give back a reservation. Returns None if nothing was ever reserved."""
    reservation = await _load_movement(session, order_id, product_id, ORDER_CREATED_REASON)
    if reservation is None:
        logger.info("No reservation for order %s / product %s, nothing to release", order_id, product_id)
        return None
    return await _apply_movement(session, order_id, product_id, ORDER_CANCELLED_REASON, quantity)


async def list_movements(session: AsyncSession, order_id: str) -> list[StockMovement]:
    result = await session.execute(
        text("""
            SELECT order_id, product_id, reason, delta, old_stock, new_stock
            FROM inventory_movements
            WHERE order_id = :order_id
            ORDER BY id ASC
        """),
        {"order_id": order_id},
    )
    return [
        StockMovement(
            order_id=row.order_id,
            product_id=row.product_id,
            reason=row.reason,
            delta=row.delta,
            old_stock=row.old_stock,
            new_stock=row.new_stock,
            applied=False,
        )
        for row in result.fetchall()
    ]
