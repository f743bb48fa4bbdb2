"""
orderflow: stock store

Product catalog operations and the one atomic stock primitive. Stock is
mutated from the API process (reservation, cancellation) and from the worker
process, so every change goes through a single conditional UPDATE instead of
a read-then-write in application code.
"""

from decimal import Decimal
from uuid import uuid4

from sqlalchemy import Numeric, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import BadRequestError, InsufficientStockError, NotFoundError
from .models import OrderStatus, Product, to_money


def _row_to_product(row) -> Product:
    return Product(
        id=str(row.id),
        name=row.name,
        description=row.description,
        price=to_money(row.price),
        stock=row.stock,
    )


def _check_price(price) -> Decimal:
    price = Decimal(str(price))
    if price < 0:
        raise BadRequestError("Price cannot be negative")
    return price


async def _insert_product(
    session: AsyncSession,
    name: str,
    price: Decimal,
    stock: int,
    description: str | None,
) -> Product:
    price = _check_price(price)
    if stock < 0:
        raise BadRequestError("Stock level cannot be negative")

    product_id = str(uuid4())
    await session.execute(
        text("""
            INSERT INTO products (id, name, description, price, stock)
            VALUES (:id, :name, :description, :price, :stock)
        """).bindparams(bindparam("price", type_=Numeric(12, 2))),
        {
            "id": product_id,
            "name": name,
            "description": description,
            "price": price,
            "stock": stock,
        },
    )
    return Product(id=product_id, name=name, description=description, price=to_money(price), stock=stock)


async def create_product(
    session: AsyncSession,
    name: str,
    price: Decimal,
    stock: int,
    description: str | None = None,
) -> Product:
    product = await _insert_product(session, name, price, stock, description)
    await session.commit()
    return product


async def create_products(session: AsyncSession, specs: list[dict]) -> list[Product]:
    """Create several products in one transaction; one bad entry rejects them all."""
    if not specs:
        raise BadRequestError("No products provided for creation")
    try:
        created = [
            await _insert_product(
                session, spec["name"], spec["price"], spec["stock"], spec.get("description")
            )
            for spec in specs
        ]
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return created


async def update_product(session: AsyncSession, product_id: str, changes: dict) -> Product:
    """
    Change a product's catalog fields (name, description, price).

    Stock is not editable here; it moves through update_stock and the
    reservation path. Orders keep the price they were placed at.
    """
    unknown = set(changes) - {"name", "description", "price"}
    if unknown:
        raise BadRequestError(f"Cannot update product field(s): {', '.join(sorted(unknown))}")
    if not changes:
        raise BadRequestError("No product fields provided for update")
    if "name" in changes and not changes["name"]:
        raise BadRequestError("Product name is required")
    if "price" in changes and changes["price"] is None:
        raise BadRequestError("Price cannot be empty")

    params = dict(changes, id=str(product_id))
    stmt = text(f"""
        UPDATE products
        SET {", ".join(f"{column} = :{column}" for column in changes)},
            updated_at = CURRENT_TIMESTAMP
        WHERE id = :id
        RETURNING id, name, description, price, stock
    """)
    if "price" in changes:
        params["price"] = _check_price(changes["price"])
        stmt = stmt.bindparams(bindparam("price", type_=Numeric(12, 2)))

    row = (await session.execute(stmt, params)).fetchone()
    if not row:
        await session.rollback()
        raise NotFoundError("Product not found")
    await session.commit()
    return _row_to_product(row)


async def delete_product(session: AsyncSession, product_id: str) -> None:
    """
    Remove a product unless an order that is still open references it.

    The open-order check is part of the DELETE statement. Lines of finished
    orders keep their snapshot and show up as "Unknown Product".
    """
    open_statuses = [status.value for status in OrderStatus if not status.is_terminal]
    result = await session.execute(
        text("""
            DELETE FROM products
            WHERE id = :id
              AND NOT EXISTS (
                SELECT 1 FROM order_lines l
                JOIN orders o ON o.id = l.order_id
                WHERE l.product_id = :id AND o.status IN :open_statuses
              )
            RETURNING id
        """).bindparams(bindparam("open_statuses", expanding=True)),
        {"id": str(product_id), "open_statuses": open_statuses},
    )
    deleted = result.scalar_one_or_none()
    if deleted is None:
        exists = await get_product(session, product_id) is not None
        await session.rollback()
        if not exists:
            raise NotFoundError("Product not found")
        raise BadRequestError(f"Product {product_id} is referenced by open orders")
    await session.commit()


async def get_product(session: AsyncSession, product_id: str) -> Product | None:
    result = await session.execute(
        text("SELECT id, name, description, price, stock FROM products WHERE id = :id"),
        {"id": str(product_id)},
    )
    row = result.fetchone()
    if not row:
        return None
    return _row_to_product(row)


async def list_products(
    session: AsyncSession,
    page: int,
    page_size: int,
    min_stock: int | None = None,
) -> tuple[list[Product], int]:
    where = "WHERE stock >= :min_stock" if min_stock is not None else ""
    params = {"min_stock": min_stock} if min_stock is not None else {}

    total = (
        await session.execute(text(f"SELECT COUNT(*) FROM products {where}"), params)
    ).scalar_one()
    result = await session.execute(
        text(f"""
            SELECT id, name, description, price, stock FROM products {where}
            ORDER BY name, id
            LIMIT :limit OFFSET :offset
        """),
        {**params, "limit": page_size, "offset": (page - 1) * page_size},
    )
    return [_row_to_product(row) for row in result.fetchall()], total


def _like_pattern(query: str) -> str:
    escaped = query.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


async def search_products(
    session: AsyncSession,
    query: str,
    page: int,
    page_size: int,
) -> tuple[list[Product], int]:
    """Case-insensitive substring match on name or description."""
    if not query or not query.strip():
        raise BadRequestError("Search query cannot be empty")

    where = """
        WHERE LOWER(name) LIKE :pattern ESCAPE '\\'
           OR LOWER(COALESCE(description, '')) LIKE :pattern ESCAPE '\\'
    """
    params = {"pattern": _like_pattern(query.strip())}

    total = (
        await session.execute(text(f"SELECT COUNT(*) FROM products {where}"), params)
    ).scalar_one()
    result = await session.execute(
        text(f"""
            SELECT id, name, description, price, stock FROM products {where}
            ORDER BY name, id
            LIMIT :limit OFFSET :offset
        """),
        {**params, "limit": page_size, "offset": (page - 1) * page_size},
    )
    return [_row_to_product(row) for row in result.fetchall()], total


async def update_stock(session: AsyncSession, product_id: str, new_stock: int) -> Product:
    """Set a product's stock to an absolute value (admin restock)."""
    if new_stock < 0:
        raise BadRequestError("Stock level cannot be negative")

    result = await session.execute(
        text("""
            UPDATE products
            SET stock = :stock, updated_at = CURRENT_TIMESTAMP
            WHERE id = :id
            RETURNING id, name, description, price, stock
        """),
        {"stock": new_stock, "id": str(product_id)},
    )
    row = result.fetchone()
    if not row:
        await session.rollback()
        raise NotFoundError("Product not found")
    await session.commit()
    return _row_to_product(row)


async def adjust_stock(session: AsyncSession, product_id: str, delta: int) -> tuple[int, int]:
    """
    Atomically add ``delta`` to a product's stock, refusing to go below zero.

    Runs in the caller's transaction and returns ``(old_stock, new_stock)``.
    Zero affected rows means the product is missing or the stock is short;
    the two cases are told apart with a follow-up read.
    """
    result = await session.execute(
        text("""
            UPDATE products
            SET stock = stock + :delta, updated_at = CURRENT_TIMESTAMP
            WHERE id = :id AND stock + :delta >= 0
            RETURNING stock
        """),
        {"delta": delta, "id": str(product_id)},
    )
    new_stock = result.scalar_one_or_none()
    if new_stock is None:
        product = await get_product(session, product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")
        raise InsufficientStockError(str(product_id), requested=-delta, available=product.stock)
    return new_stock - delta, new_stock
