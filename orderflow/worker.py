"""
orderflow: order worker

Consumes order.created and order.status.changed and applies the inventory
side of each event, then announces every stock change on inventory.update.

    order.created          ──▶ reserve stock per item ──▶ InventoryUpdate(order_created)
    order.status.changed   ──▶ (→ CANCELLED only)
                               release stock per line ──▶ InventoryUpdate(order_cancelled)

Messages arrive at least once. Stock changes go through the inventory
ledger, so a redelivered event never moves stock twice; a reservation
already made by the API is recognised and only reported.

Run as its own process:

    python -m orderflow.worker
"""

import asyncio
import logging
import signal

from sqlalchemy.orm import sessionmaker

from . import commands, inventory, orders
from .broker import Broker, QueueName, RedisBroker
from .config import LOG_FORMAT, load_settings
from .db import make_engine, make_session_factory
from .errors import NotFoundError, PoisonMessageError
from .events import (
    ORDER_CANCELLED_REASON,
    ORDER_CREATED_REASON,
    InventoryUpdate,
    OrderCreated,
    OrderStatusChanged,
)
from .inventory import StockMovement
from .models import OrderStatus

logger = logging.getLogger(__name__)


class OrderWorker:
    def __init__(self, session_factory: sessionmaker, broker: Broker) -> None:
        self.session_factory = session_factory
        self.broker = broker

    async def run(self, shutdown_event: asyncio.Event) -> None:
        logger.info("Starting Order Worker...")
        await asyncio.gather(
            self.broker.consume(QueueName.ORDER_CREATED.value, self.handle_order_created, shutdown_event),
            self.broker.consume(
                QueueName.ORDER_STATUS_CHANGED.value, self.handle_status_changed, shutdown_event
            ),
        )
        logger.info("Order Worker stopped")

    async def _publish_inventory_update(self, movement: StockMovement, reason: str) -> None:
        update = InventoryUpdate(
            product_id=movement.product_id,
            old_stock=movement.old_stock,
            new_stock=movement.new_stock,
            reason=reason,
            order_id=movement.order_id,
        )
        await self.broker.publish(QueueName.INVENTORY_UPDATE.value, update.to_message())

    # ── order.created ───────────────────────────────

    async def handle_order_created(self, body: str) -> None:
        message = OrderCreated.from_message(body)
        logger.info("Processing new order: %s", message.order_id)
        try:
            await self._apply_order_created(message)
        except PoisonMessageError:
            raise
        except Exception:
            logger.exception("Error processing new order %s", message.order_id)
            await self._compensate(message.order_id)
            raise
        logger.info("Successfully processed new order: %s", message.order_id)

    async def _apply_order_created(self, message: OrderCreated) -> None:
        async with self.session_factory() as session:
            order = await orders.get_order(session, message.order_id)
            if order is None:
                raise NotFoundError(f"Order {message.order_id} not found")
            if order.status == OrderStatus.CANCELLED:
                logger.info("Order %s is already cancelled, skipping stock update", order.id)
                return

            movements = []
            try:
                for item in message.items:
                    movements.append(
                        await inventory.reserve_stock(session, order.id, item.product_id, item.quantity)
                    )
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        for movement in movements:
            await self._publish_inventory_update(movement, ORDER_CREATED_REASON)

    async def _compensate(self, order_id: str) -> None:
        """Cancel an order whose inventory could not be applied (best effort)."""
        try:
            async with self.session_factory() as session:
                await commands.update_status(session, self.broker, order_id, OrderStatus.CANCELLED)
            logger.warning("Order %s cancelled as compensation", order_id)
        except Exception:
            logger.exception("Compensation failed: could not cancel order %s", order_id)

    # ── order.status.changed ────────────────────────

    async def handle_status_changed(self, body: str) -> None:
        message = OrderStatusChanged.from_message(body)
        logger.info(
            "Processing order status change: %s from %s to %s",
            message.order_id, message.old_status.value, message.new_status.value,
        )
        if not message.is_cancellation:
            return

        async with self.session_factory() as session:
            order = await orders.get_order(session, message.order_id)
            if order is None:
                raise NotFoundError(f"Order {message.order_id} not found")

            movements = []
            try:
                for line in order.items:
                    movement = await inventory.release_stock(session, order.id, line.product_id, line.quantity)
                    if movement is not None:
                        movements.append(movement)
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        for movement in movements:
            await self._publish_inventory_update(movement, ORDER_CANCELLED_REASON)
        logger.info("Successfully processed status change for order: %s", message.order_id)


async def main() -> None:
    settings = load_settings()
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)

    engine = make_engine(settings.database_url)
    broker = RedisBroker(
        settings.redis_url,
        consumer_name=settings.consumer_name,
        handler_timeout=settings.handler_timeout,
        max_deliveries=settings.max_deliveries,
    )
    await broker.connect()

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    try:
        await OrderWorker(make_session_factory(engine), broker).run(shutdown_event)
    finally:
        await broker.close()
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
