"""
orderflow: transactional outbox

Events are written to the outbox table in the same transaction as the
state change they describe, then handed to the broker. If the broker is
down the entry stays pending and the relay loop delivers it later, so a
committed order never loses its event.

Delivery is at-least-once: an entry published right after commit and again
by the relay (before it was marked) reaches consumers twice.
"""

import asyncio
import logging
from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from .broker import Broker
from .errors import BrokerError
from .events import Event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboxEntry:
    id: int
    event_id: str
    queue: str
    payload: str


async def append(session: AsyncSession, queue: str, event: Event) -> OutboxEntry:
    """Record an event for publishing. Runs in the caller's transaction."""
    payload = event.to_message()
    result = await session.execute(
        text("""
            INSERT INTO outbox (event_id, queue, payload)
            VALUES (:event_id, :queue, :payload)
            RETURNING id
        """),
        {"event_id": event.event_id, "queue": queue, "payload": payload},
    )
    return OutboxEntry(id=result.scalar_one(), event_id=event.event_id, queue=queue, payload=payload)


async def load_pending(session: AsyncSession, limit: int = 100) -> list[OutboxEntry]:
    result = await session.execute(
        text("""
            SELECT id, event_id, queue, payload
            FROM outbox
            WHERE published_at IS NULL
            ORDER BY id ASC
            LIMIT :limit
        """),
        {"limit": limit},
    )
    return [
        OutboxEntry(id=row.id, event_id=row.event_id, queue=row.queue, payload=row.payload)
        for row in result.fetchall()
    ]


async def mark_published(session: AsyncSession, entry_id: int) -> None:
    await session.execute(
        text("UPDATE outbox SET published_at = CURRENT_TIMESTAMP WHERE id = :id"),
        {"id": entry_id},
    )


async def publish(session: AsyncSession, broker: Broker, entry: OutboxEntry) -> bool:
    """Hand one entry to the broker. Returns False if it stays pending."""
    try:
        await broker.publish(entry.queue, entry.payload)
    except BrokerError:
        logger.warning(
            "Could not publish event %s to %s, left in outbox for relay",
            entry.event_id, entry.queue, exc_info=True,
        )
        return False
    try:
        await mark_published(session, entry.id)
        await session.commit()
    except SQLAlchemyError:
        # Delivered but still pending here; the relay will send it again.
        await session.rollback()
        logger.warning(
            "Event %s published to %s but could not be marked, left pending",
            entry.event_id, entry.queue, exc_info=True,
        )
        return False
    return True


async def relay_pending(session: AsyncSession, broker: Broker, limit: int = 100) -> int:
    """Publish pending entries oldest first, stopping at the first broker failure."""
    relayed = 0
    for entry in await load_pending(session, limit):
        if not await publish(session, broker, entry):
            break
        relayed += 1
    if relayed:
        logger.info("Relayed %d outbox event(s)", relayed)
    return relayed


async def run_relay(
    session_factory: sessionmaker,
    broker: Broker,
    shutdown_event: asyncio.Event,
    interval: float = 1.0,
    batch_size: int = 100,
) -> None:
    logger.info("Outbox relay started")
    while not shutdown_event.is_set():
        try:
            async with session_factory() as session:
                relayed = await relay_pending(session, broker, batch_size)
        except Exception:
            logger.exception("Outbox relay pass failed")
            relayed = 0
        if relayed < batch_size:
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
    logger.info("Outbox relay stopped")
