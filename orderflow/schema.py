"""
orderflow: database schema

Products and orders live in one database so that order rows, stock
reservations and outbox entries commit in a single transaction.

┌──────────┐     ┌─────────────┐     ┌─────────────────────┐
│ orders   │────▶│ order_lines │────▶│ products            │
└────┬─────┘     └─────────────┘     └──────────▲──────────┘
     │                                          │
     │           ┌─────────────────────┐        │
     ├──────────▶│ inventory_movements │────────┘
     │           └─────────────────────┘
     │           ┌────────┐
     └──────────▶│ outbox │  (relayed to the broker)
                 └────────┘
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

products = Table(
    "products",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("description", Text, nullable=True),
    Column("price", Numeric(12, 2), nullable=False),
    Column("stock", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now()),
    CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
    CheckConstraint("price >= 0", name="ck_products_price_non_negative"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("status", String(20), nullable=False),
    Column("total_amount", Numeric(12, 2), nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now()),
)

order_lines = Table(
    "order_lines",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(36), ForeignKey("orders.id"), nullable=False, index=True),
    # No FK: lines of finished orders outlive a deleted product.
    Column("product_id", String(36), nullable=False, index=True),
    Column("position", Integer, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("price_at_purchase", Numeric(12, 2), nullable=False),
    CheckConstraint("quantity > 0", name="ck_order_lines_quantity_positive"),
)

inventory_movements = Table(
    "inventory_movements",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String(36), nullable=False),
    Column("product_id", String(36), nullable=False),
    Column("reason", String(32), nullable=False),
    Column("delta", Integer, nullable=False),
    Column("old_stock", Integer, nullable=True),
    Column("new_stock", Integer, nullable=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    UniqueConstraint("order_id", "product_id", "reason", name="uq_inventory_movements_key"),
)

outbox = Table(
    "outbox",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_id", String(36), nullable=False, unique=True),
    Column("queue", String(64), nullable=False),
    Column("payload", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("published_at", DateTime(timezone=True), nullable=True),
)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


async def drop_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
