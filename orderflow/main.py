"""
orderflow: FastAPI entry point

Thin HTTP layer over the order commands and queries. Authentication is done
upstream; the gateway forwards the caller as X-User-Id / X-User-Role.

┌────────┐  POST /orders   ┌──────────────┐  outbox  ┌───────┐  order.*  ┌────────┐
│ client │ ──────────────▶ │ Order API    │ ───────▶ │ Redis │ ────────▶ │ worker │
└────────┘                 │ (+ relay)    │          └───────┘           └────────┘
                           └──────────────┘
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import AsyncIterator

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from . import commands, outbox, products, queries
from .broker import Broker, RedisBroker
from .config import LOG_FORMAT, load_settings
from .db import make_engine, make_session_factory
from .errors import ForbiddenError, NotFoundError, OrderflowError
from .models import CamelModel, OrderItemInput, OrderStatus, Page, Product, UserRole, normalize_pagination
from .schema import create_schema

settings = load_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)

    engine = make_engine(settings.database_url)
    await create_schema(engine)
    app.state.session_factory = make_session_factory(engine)

    broker = RedisBroker(settings.redis_url, consumer_name=settings.consumer_name)
    await broker.connect()
    app.state.broker = broker

    shutdown_event = asyncio.Event()
    relay_task = asyncio.create_task(
        outbox.run_relay(
            app.state.session_factory,
            broker,
            shutdown_event,
            interval=settings.relay_interval,
            batch_size=settings.relay_batch_size,
        )
    )
    yield
    shutdown_event.set()
    relay_task.cancel()
    try:
        await relay_task
    except asyncio.CancelledError:
        pass
    await broker.close()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


@app.exception_handler(OrderflowError)
async def handle_orderflow_error(request: Request, exc: OrderflowError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Request %s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message, "status": "error"})


# ── Dependencies ─────────────────────────────────


class Requester(CamelModel):
    id: str
    role: UserRole


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    async with request.app.state.session_factory() as session:
        yield session


def get_broker(request: Request) -> Broker:
    return request.app.state.broker


def get_requester(
    x_user_id: str = Header(...),
    x_user_role: UserRole = Header(UserRole.USER),
) -> Requester:
    return Requester(id=x_user_id, role=x_user_role)


def require_admin(requester: Requester = Depends(get_requester)) -> Requester:
    if requester.role != UserRole.ADMIN:
        raise ForbiddenError("Admin privileges required")
    return requester


# ── Request Models ───────────────────────────────


class CreateOrderRequest(CamelModel):
    items: list[OrderItemInput]


class UpdateStatusRequest(CamelModel):
    status: OrderStatus


class CreateProductRequest(CamelModel):
    name: str
    description: str | None = None
    price: Decimal = Field(ge=0)
    stock: int = Field(ge=0)


class CreateProductsRequest(CamelModel):
    products: list[CreateProductRequest] = Field(min_length=1)


class UpdateProductRequest(CamelModel):
    name: str | None = Field(None, min_length=1)
    description: str | None = None
    price: Decimal | None = Field(None, ge=0)


class UpdateStockRequest(CamelModel):
    stock: int


# ── Orders ───────────────────────────────────────


@app.post("/orders", status_code=201)
async def create_order(
    req: CreateOrderRequest,
    requester: Requester = Depends(get_requester),
    session: AsyncSession = Depends(get_session),
    broker: Broker = Depends(get_broker),
):
    order = await commands.create_order(session, broker, requester.id, req.items)
    return {"order": order}


@app.get("/orders/me")
async def list_my_orders(
    page: int | None = None,
    page_size: int | None = Query(None, alias="pageSize"),
    requester: Requester = Depends(get_requester),
    session: AsyncSession = Depends(get_session),
):
    return await queries.list_orders_for_user(session, requester.id, page, page_size)


@app.get("/orders")
async def list_all_orders(
    page: int | None = None,
    page_size: int | None = Query(None, alias="pageSize"),
    _: Requester = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    return await queries.list_all_orders(session, page, page_size)


@app.get("/orders/{order_id}")
async def get_order(
    order_id: str,
    requester: Requester = Depends(get_requester),
    session: AsyncSession = Depends(get_session),
):
    order = await queries.get_order_by_id(session, order_id, requester.id, requester.role)
    return {"order": order}


@app.patch("/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    req: UpdateStatusRequest,
    _: Requester = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
    broker: Broker = Depends(get_broker),
):
    order = await commands.update_status(session, broker, order_id, req.status)
    return {"order": order}


# ── Products ─────────────────────────────────────


@app.get("/products")
async def list_products(
    page: int | None = None,
    page_size: int | None = Query(None, alias="pageSize"),
    min_stock: int | None = Query(None, alias="minStock"),
    session: AsyncSession = Depends(get_session),
):
    page, page_size = normalize_pagination(page, page_size)
    items, total = await products.list_products(session, page, page_size, min_stock)
    return Page[Product].build(items, total, page, page_size)


@app.get("/products/search")
async def search_products(
    q: str = "",
    page: int | None = None,
    page_size: int | None = Query(None, alias="pageSize"),
    session: AsyncSession = Depends(get_session),
):
    page, page_size = normalize_pagination(page, page_size)
    items, total = await products.search_products(session, q, page, page_size)
    return Page[Product].build(items, total, page, page_size)


@app.get("/products/{product_id}")
async def get_product(product_id: str, session: AsyncSession = Depends(get_session)):
    product = await products.get_product(session, product_id)
    if product is None:
        raise NotFoundError("Product not found")
    return product


@app.post("/products", status_code=201)
async def create_product(
    req: CreateProductRequest,
    _: Requester = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    return await products.create_product(session, req.name, req.price, req.stock, req.description)


@app.post("/products/bulk", status_code=201)
async def create_products(
    req: CreateProductsRequest,
    _: Requester = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    created = await products.create_products(session, [p.model_dump() for p in req.products])
    return {"products": created}


@app.patch("/products/{product_id}")
async def update_product(
    product_id: str,
    req: UpdateProductRequest,
    _: Requester = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    return await products.update_product(session, product_id, req.model_dump(exclude_unset=True))


@app.delete("/products/{product_id}", status_code=204)
async def delete_product(
    product_id: str,
    _: Requester = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    await products.delete_product(session, product_id)


@app.patch("/products/{product_id}/stock")
async def update_product_stock(
    product_id: str,
    req: UpdateStockRequest,
    _: Requester = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    return await products.update_stock(session, product_id, req.stock)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
