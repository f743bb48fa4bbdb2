import asyncio
from collections import defaultdict, deque
from decimal import Decimal
from uuid import uuid4

import pytest

from orderflow import products
from orderflow.broker import Broker, Message, Outcome
from orderflow.db import make_engine, make_session_factory
from orderflow.errors import BrokerError
from orderflow.schema import create_schema


class FakeBroker(Broker):
    """In-memory broker that settles messages through the real Broker.deliver."""

    def __init__(self, **kwargs) -> None:
        kwargs.setdefault("handler_timeout", 5.0)
        super().__init__(**kwargs)
        self.queues: dict[str, deque[Message]] = defaultdict(deque)
        self.acked: list[Message] = []
        self.requeued: list[Message] = []
        self.discarded: list[Message] = []
        self.fail_publish = False

    async def publish(self, queue: str, payload: str) -> None:
        if self.fail_publish:
            raise BrokerError("broker unavailable")
        self.queues[queue].append(Message(id=uuid4().hex, queue=queue, body=payload))

    async def ack(self, message: Message) -> None:
        self.acked.append(message)

    async def nack(self, message: Message, requeue: bool) -> None:
        if requeue:
            self.requeued.append(message)
            self.queues[message.queue].append(
                Message(id=message.id, queue=message.queue, body=message.body, attempts=message.attempts + 1)
            )
        else:
            self.discarded.append(message)

    async def consume(self, queue, handler, shutdown_event: asyncio.Event) -> None:
        while not shutdown_event.is_set():
            if self.queues[queue]:
                await self.deliver(self.queues[queue].popleft(), handler)
            else:
                await asyncio.sleep(0.01)

    async def drain(self, queue: str, handler, limit: int = 50) -> list[Outcome]:
        outcomes = []
        while self.queues[queue] and len(outcomes) < limit:
            outcomes.append(await self.deliver(self.queues[queue].popleft(), handler))
        return outcomes

    def bodies(self, queue: str) -> list[str]:
        return [message.body for message in self.queues[queue]]


@pytest.fixture
async def engine(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'orderflow.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
async def product_a(session):
    return await products.create_product(session, "Widget", Decimal("10.00"), 10)


@pytest.fixture
async def product_b(session):
    return await products.create_product(session, "Gadget", Decimal("5.00"), 5)
