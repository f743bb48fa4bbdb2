"""
orderflow: message broker client

Durable point-to-point queues with at-least-once delivery and manual
acknowledgement. Each delivered message gets exactly one of:

    ack              handler finished
    nack(requeue)    transient failure, redelivered later
    nack(no requeue) poison message, dropped
    dead_letter      still failing after max_deliveries attempts

The Redis implementation uses the reliable-queue pattern:

    publish ── LPUSH ──▶ [ queue ] ── BLMOVE ──▶ [ queue:processing:<consumer> ]
                            ▲                               │
                            └──────── RPUSH (requeue) ◀─────┤
                                                            └── LREM (ack / discard)

A message stays in the processing list while its handler runs, so a
consumer that crashes mid-message gets it back on restart.
"""

import abc
import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .errors import BrokerError, is_poison

logger = logging.getLogger(__name__)

Handler = Callable[[str], Awaitable[None]]


class QueueName(str, Enum):
    ORDER_CREATED = "order.created"
    ORDER_STATUS_CHANGED = "order.status.changed"
    INVENTORY_UPDATE = "inventory.update"


def dead_letter_queue(queue: str) -> str:
    return f"{queue}.dead"


class Outcome(str, Enum):
    ACKED = "acked"
    REQUEUED = "requeued"
    DISCARDED = "discarded"
    DEAD_LETTERED = "dead_lettered"


@dataclass(frozen=True)
class Message:
    id: str
    queue: str
    body: str
    attempts: int = 0
    # Broker-specific handles needed to ack/nack this delivery.
    raw: str | None = None
    receipt: str | None = None

    def encode(self) -> str:
        return json.dumps({"id": self.id, "body": self.body, "attempts": self.attempts})

    @classmethod
    def decode(cls, queue: str, raw: str, receipt: str | None = None) -> "Message":
        """Read an envelope; anything else is taken as a bare body."""
        try:
            envelope = json.loads(raw)
            return cls(
                id=str(envelope["id"]),
                queue=queue,
                body=envelope["body"],
                attempts=int(envelope.get("attempts", 0)),
                raw=raw,
                receipt=receipt,
            )
        except (ValueError, TypeError, KeyError):
            return cls(id=uuid4().hex, queue=queue, body=raw, raw=raw, receipt=receipt)


class Broker(abc.ABC):
    def __init__(self, handler_timeout: float | None = 30.0, max_deliveries: int = 10) -> None:
        self.handler_timeout = handler_timeout
        self.max_deliveries = max_deliveries

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abc.abstractmethod
    async def publish(self, queue: str, payload: str) -> None:
        """Enqueue a persistent message; returns once the broker has it."""

    @abc.abstractmethod
    async def consume(self, queue: str, handler: Handler, shutdown_event: asyncio.Event) -> None:
        """Deliver messages to ``handler`` one at a time until shutdown."""

    @abc.abstractmethod
    async def ack(self, message: Message) -> None: ...

    @abc.abstractmethod
    async def nack(self, message: Message, requeue: bool) -> None: ...

    async def dead_letter(self, message: Message) -> None:
        await self.publish(dead_letter_queue(message.queue), message.body)
        await self.nack(message, requeue=False)

    async def deliver(self, message: Message, handler: Handler) -> Outcome:
        """Run ``handler`` for one message and settle it with the broker."""
        logger.info(
            "Received message %s from %s (attempt %d), processing...",
            message.id, message.queue, message.attempts + 1,
        )
        try:
            await asyncio.wait_for(handler(message.body), timeout=self.handler_timeout)
        except Exception as exc:
            if is_poison(exc):
                logger.warning("Discarding invalid message %s from %s: %s", message.id, message.queue, exc)
                await self.nack(message, requeue=False)
                return Outcome.DISCARDED
            if self.max_deliveries and message.attempts + 1 >= self.max_deliveries:
                logger.error(
                    "Message %s from %s failed %d times, moving to %s",
                    message.id, message.queue, message.attempts + 1,
                    dead_letter_queue(message.queue), exc_info=exc,
                )
                await self.dead_letter(message)
                return Outcome.DEAD_LETTERED
            logger.warning("Requeuing message %s in %s", message.id, message.queue, exc_info=exc)
            await self.nack(message, requeue=True)
            return Outcome.REQUEUED

        await self.ack(message)
        logger.info("Successfully processed message %s from %s", message.id, message.queue)
        return Outcome.ACKED


class RedisBroker(Broker):
    def __init__(
        self,
        url: str,
        consumer_name: str = "worker-1",
        handler_timeout: float | None = 30.0,
        max_deliveries: int = 10,
        block_timeout: float = 1.0,
    ) -> None:
        super().__init__(handler_timeout=handler_timeout, max_deliveries=max_deliveries)
        self.url = url
        self.consumer_name = consumer_name
        self.block_timeout = block_timeout
        self.redis: aioredis.Redis | None = None

    def processing_list(self, queue: str) -> str:
        return f"{queue}:processing:{self.consumer_name}"

    async def connect(self) -> None:
        if self.redis is not None:
            return
        self.redis = aioredis.from_url(self.url, decode_responses=True)
        try:
            await self.redis.ping()
        except RedisError as e:
            raise BrokerError(f"Failed to connect to Redis at {self.url}: {e}") from e
        logger.info("Redis broker connection established")

    async def close(self) -> None:
        if self.redis is None:
            return
        await self.redis.aclose()
        self.redis = None
        logger.info("Redis broker connection closed")

    def _client(self) -> aioredis.Redis:
        if self.redis is None:
            raise BrokerError("Broker is not connected")
        return self.redis

    async def publish(self, queue: str, payload: str) -> None:
        message = Message(id=uuid4().hex, queue=queue, body=payload)
        try:
            await self._client().lpush(queue, message.encode())
        except RedisError as e:
            raise BrokerError(f"Error publishing message to {queue}: {e}") from e

    async def ack(self, message: Message) -> None:
        try:
            await self._client().lrem(message.receipt, 1, message.raw)
        except RedisError as e:
            raise BrokerError(f"Error acknowledging message {message.id}: {e}") from e

    async def nack(self, message: Message, requeue: bool) -> None:
        try:
            async with self._client().pipeline(transaction=True) as pipe:
                pipe.lrem(message.receipt, 1, message.raw)
                if requeue:
                    retry = Message(id=message.id, queue=message.queue, body=message.body,
                                    attempts=message.attempts + 1)
                    # Popped from the right, so this is the next delivery.
                    pipe.rpush(message.queue, retry.encode())
                await pipe.execute()
        except RedisError as e:
            raise BrokerError(f"Error rejecting message {message.id}: {e}") from e

    async def recover(self, queue: str) -> int:
        """Move messages left in this consumer's processing list back to the queue."""
        client = self._client()
        processing = self.processing_list(queue)
        moved = 0
        while await client.lmove(processing, queue, "LEFT", "RIGHT") is not None:
            moved += 1
        if moved:
            logger.warning("Recovered %d unacknowledged message(s) into %s", moved, queue)
        return moved

    async def consume(self, queue: str, handler: Handler, shutdown_event: asyncio.Event) -> None:
        client = self._client()
        processing = self.processing_list(queue)
        await self.recover(queue)
        logger.info("Consuming from %s as %s", queue, self.consumer_name)

        while not shutdown_event.is_set():
            try:
                raw = await client.blmove(queue, processing, self.block_timeout, "RIGHT", "LEFT")
            except RedisError:
                logger.exception("Error receiving from %s, retrying", queue)
                await asyncio.sleep(self.block_timeout)
                continue
            if raw is None:
                continue
            message = Message.decode(queue, raw, receipt=processing)
            try:
                await self.deliver(message, handler)
            except BrokerError:
                # Left in the processing list; recovered on the next start.
                logger.exception("Could not settle message %s from %s", message.id, queue)
                await asyncio.sleep(self.block_timeout)
