"""
orderflow: domain models

State transitions of an order:
    PENDING    → PROCESSING | CANCELLED
    PROCESSING → SHIPPED    | CANCELLED
    SHIPPED    → DELIVERED
    DELIVERED, CANCELLED are terminal.

Field names are camelCase on the wire and snake_case in Python.
"""

from decimal import Decimal
from enum import Enum
from math import ceil
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

CENT = Decimal("0.01")

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100

T = TypeVar("T")


def to_money(value) -> Decimal:
    """Normalise a stored numeric (float on SQLite, Decimal on PostgreSQL)."""
    return Decimal(str(value)).quantize(CENT)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

    def can_transition_to(self, new_status: "OrderStatus") -> bool:
        return new_status in ALLOWED_TRANSITIONS[self]

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self]


ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


class UserRole(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class Product(CamelModel):
    id: str
    name: str
    description: str | None = None
    price: Decimal = Field(ge=0)
    stock: int = Field(ge=0)


class OrderItemInput(CamelModel):
    product_id: str
    quantity: int


class OrderLine(CamelModel):
    id: str
    order_id: str
    product_id: str
    name: str = "Unknown Product"
    quantity: int
    price_at_purchase: Decimal

    @property
    def subtotal(self) -> Decimal:
        return self.price_at_purchase * self.quantity


class Order(CamelModel):
    id: str
    user_id: str
    status: OrderStatus
    total_amount: Decimal
    items: list[OrderLine] = Field(default_factory=list)
    # Event committed to the outbox but not yet handed to the broker.
    event_pending: bool = False

    def lines_total(self) -> Decimal:
        return sum((line.subtotal for line in self.items), Decimal("0")).quantize(CENT)


def normalize_pagination(page: int | None = None, page_size: int | None = None) -> tuple[int, int]:
    page = page if page and page > 0 else DEFAULT_PAGE
    page_size = min(page_size, MAX_PAGE_SIZE) if page_size and page_size > 0 else DEFAULT_PAGE_SIZE
    return page, page_size


class Page(CamelModel, Generic[T]):
    data: list[T]
    total: int
    current_page: int
    total_pages: int
    page_size: int

    @classmethod
    def build(cls, data: list[T], total: int, page: int, page_size: int) -> "Page[T]":
        return cls(
            data=data,
            total=total,
            current_page=page,
            total_pages=ceil(total / page_size),
            page_size=page_size,
        )
