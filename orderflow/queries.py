"""
orderflow: order queries (read side)
"""

from sqlalchemy.ext.asyncio import AsyncSession

from . import orders
from .errors import ForbiddenError, NotFoundError
from .models import Order, Page, UserRole, normalize_pagination


async def get_order_by_id(
    session: AsyncSession,
    order_id: str,
    requester_id: str,
    requester_role: UserRole,
) -> Order:
    """Only the owner or an admin may see an order."""
    order = await orders.get_order(session, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if UserRole(requester_role) != UserRole.ADMIN and order.user_id != str(requester_id):
        raise ForbiddenError("You do not have permission to access this order")
    return order


async def list_orders_for_user(
    session: AsyncSession,
    user_id: str,
    page: int | None = None,
    page_size: int | None = None,
) -> Page[Order]:
    page, page_size = normalize_pagination(page, page_size)
    items, total = await orders.list_orders(session, page, page_size, user_id=user_id)
    return Page[Order].build(items, total, page, page_size)


async def list_all_orders(
    session: AsyncSession,
    page: int | None = None,
    page_size: int | None = None,
) -> Page[Order]:
    page, page_size = normalize_pagination(page, page_size)
    items, total = await orders.list_orders(session, page, page_size)
    return Page[Order].build(items, total, page, page_size)
