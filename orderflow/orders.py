"""
orderflow: order store

Orders and their lines. Lines are written once together with the order;
afterwards only the order status changes.
"""

from decimal import Decimal
from uuid import uuid4

from sqlalchemy import Numeric, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Order, OrderLine, OrderStatus, to_money


async def insert_order(
    session: AsyncSession,
    user_id: str,
    lines: list[dict],
    total_amount: Decimal,
) -> str:
    """
    Insert an order in status PENDING with its lines.

    ``lines`` are dicts with product_id, quantity and price_at_purchase.
    Runs in the caller's transaction.
    """
    order_id = str(uuid4())
    await session.execute(
        text("""
            INSERT INTO orders (id, user_id, status, total_amount)
            VALUES (:id, :user_id, :status, :total_amount)
        """).bindparams(bindparam("total_amount", type_=Numeric(12, 2))),
        {
            "id": order_id,
            "user_id": str(user_id),
            "status": OrderStatus.PENDING.value,
            "total_amount": total_amount,
        },
    )
    for position, line in enumerate(lines):
        await session.execute(
            text("""
                INSERT INTO order_lines
                    (id, order_id, product_id, position, quantity, price_at_purchase)
                VALUES
                    (:id, :order_id, :product_id, :position, :quantity, :price)
            """).bindparams(bindparam("price", type_=Numeric(12, 2))),
            {
                "id": str(uuid4()),
                "order_id": order_id,
                "product_id": str(line["product_id"]),
                "position": position,
                "quantity": line["quantity"],
                "price": line["price_at_purchase"],
            },
        )
    return order_id


async def _load_lines(session: AsyncSession, order_ids: list[str]) -> dict[str, list[OrderLine]]:
    lines: dict[str, list[OrderLine]] = {order_id: [] for order_id in order_ids}
    if not order_ids:
        return lines
    result = await session.execute(
        text("""
            SELECT l.id, l.order_id, l.product_id, l.quantity, l.price_at_purchase,
                   p.name AS product_name
            FROM order_lines l
            LEFT JOIN products p ON p.id = l.product_id
            WHERE l.order_id IN :order_ids
            ORDER BY l.order_id, l.position
        """).bindparams(bindparam("order_ids", expanding=True)),
        {"order_ids": order_ids},
    )
    for row in result.fetchall():
        line = OrderLine(
            id=str(row.id),
            order_id=str(row.order_id),
            product_id=str(row.product_id),
            quantity=row.quantity,
            price_at_purchase=to_money(row.price_at_purchase),
            name=row.product_name or "Unknown Product",
        )
        lines[line.order_id].append(line)
    return lines


def _row_to_order(row, lines: list[OrderLine]) -> Order:
    return Order(
        id=str(row.id),
        user_id=str(row.user_id),
        status=OrderStatus(row.status),
        total_amount=to_money(row.total_amount),
        items=lines,
    )


async def get_order(session: AsyncSession, order_id: str) -> Order | None:
    result = await session.execute(
        text("SELECT id, user_id, status, total_amount FROM orders WHERE id = :id"),
        {"id": str(order_id)},
    )
    row = result.fetchone()
    if not row:
        return None
    lines = await _load_lines(session, [str(row.id)])
    return _row_to_order(row, lines[str(row.id)])


async def update_order_status(
    session: AsyncSession,
    order_id: str,
    status: OrderStatus,
    expected: OrderStatus | None = None,
) -> Order | None:
    """
    Change the status column. Runs in the caller's transaction.

    With ``expected`` the write only happens while the row still holds that
    status (compare-and-set); None means the order is missing or was moved
    by someone else in the meantime.
    """
    where = "WHERE id = :id"
    params = {"status": status.value, "id": str(order_id)}
    if expected is not None:
        where += " AND status = :expected"
        params["expected"] = expected.value
    result = await session.execute(
        text(f"""
            UPDATE orders
            SET status = :status, updated_at = CURRENT_TIMESTAMP
            {where}
        """),
        params,
    )
    if result.rowcount == 0:
        return None
    return await get_order(session, order_id)


async def list_orders(
    session: AsyncSession,
    page: int,
    page_size: int,
    user_id: str | None = None,
) -> tuple[list[Order], int]:
    """Newest orders first, optionally restricted to one user."""
    where = "WHERE user_id = :user_id" if user_id is not None else ""
    params = {"user_id": str(user_id)} if user_id is not None else {}

    total = (
        await session.execute(text(f"SELECT COUNT(*) FROM orders {where}"), params)
    ).scalar_one()
    result = await session.execute(
        text(f"""
            SELECT id, user_id, status, total_amount FROM orders {where}
            ORDER BY created_at DESC, id DESC
            LIMIT :limit OFFSET :offset
        """),
        {**params, "limit": page_size, "offset": (page - 1) * page_size},
    )
    rows = result.fetchall()
    lines = await _load_lines(session, [str(row.id) for row in rows])
    return [_row_to_order(row, lines[str(row.id)]) for row in rows], total
