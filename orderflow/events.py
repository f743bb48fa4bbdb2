"""
orderflow: event definitions

Facts published on the broker. Events are named in the past tense and are
immutable; every envelope carries an event id and a timestamp.
"""

from datetime import datetime, timezone
from uuid import uuid4

from pydantic import ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import PoisonMessageError
from .models import CamelModel, OrderStatus

ORDER_CREATED_REASON = "order_created"
ORDER_CANCELLED_REASON = "order_cancelled"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Event(CamelModel):
    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = Field(default_factory=_now)

    def to_message(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_message(cls, raw: str | bytes):
        try:
            return cls.model_validate_json(raw)
        except PydanticValidationError as e:
            raise PoisonMessageError(f"Failed to parse {cls.__name__} message: {e}") from e


class OrderCreatedItem(CamelModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    quantity: int = Field(gt=0)


class OrderCreated(Event):
    """An order was placed and its stock reserved."""
    order_id: str
    user_id: str
    items: list[OrderCreatedItem] = Field(min_length=1)


class OrderStatusChanged(Event):
    """An order moved from one status to another."""
    order_id: str
    old_status: OrderStatus
    new_status: OrderStatus

    @property
    def is_cancellation(self) -> bool:
        return self.new_status == OrderStatus.CANCELLED and self.old_status != OrderStatus.CANCELLED


class InventoryUpdate(Event):
    """A product's stock changed because of an order."""
    product_id: str
    old_stock: int
    new_stock: int
    reason: str
    order_id: str
