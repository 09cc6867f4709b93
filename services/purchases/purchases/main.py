"""
Purchases Service — FastAPI エントリーポイント

Command (POST/PUT/DELETE) はイベントを発行するだけで、結果は返さない (202)。
Query (GET) はカートストアを直接読む。
起動時に Redis Streams のコンシューマをバックグラウンドタスクとして開始する。

┌────────┐  command   ┌─────────────────┐  Redis Streams  ┌─────────────────┐
│ Client │ ─────────▶ │ Command Adapter │ ──────────────▶ │ Event Processor │
│        │            └─────────────────┘                 └────────┬────────┘
│        │  query                                                  │ single writer
│        │ ───────────────────────────────────────────────▶ ┌──────▼──────┐
└────────┘                                                  │ Cart Store  │
                                                            └─────────────┘
"""

import asyncio
import functools
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .bus import RedisStreamPublisher, StreamConsumer
from .cart import Cart, Item
from .commands import CartCommandAdapter
from .config import Settings
from .orders import HttpOrderUseCase
from .processor import CartEventProcessor
from .store import create_schema, open_cart_store


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings.from_env()
    engine = create_async_engine(settings.database_url, echo=False)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    store_factory = functools.partial(open_cart_store, async_session)
    redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)
    http_client = httpx.AsyncClient(timeout=30.0)

    await create_schema(engine)

    app.state.commands = CartCommandAdapter(
        RedisStreamPublisher(redis_pool, settings.partitions), store_factory, settings.topics
    )
    processor = CartEventProcessor(
        store_factory, HttpOrderUseCase(http_client, settings.order_service_url)
    )
    consumer = StreamConsumer(
        redis_pool,
        settings.consumer_group,
        settings.consumer_name,
        partitions=settings.worker_partitions,
        block_ms=settings.block_ms,
        claim_idle_ms=settings.claim_idle_ms,
        max_deliveries=settings.max_deliveries,
        retry_ms=settings.retry_ms,
    )
    processor.register(consumer, settings.topics)

    shutdown_event = asyncio.Event()
    consumer_task = asyncio.create_task(consumer.run(shutdown_event))
    yield
    shutdown_event.set()
    consumer_task.cancel()
    try:
        await consumer_task
    except asyncio.CancelledError:
        pass
    await http_client.aclose()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Purchases Service", lifespan=lifespan)


# ── Request / Response Models ────────────────────

class ItemRequest(BaseModel):
    product_id: int
    unit_price: float
    quantity: int


class CreateCartRequest(BaseModel):
    user_id: int
    items: list[ItemRequest] = []


class UpdateItemsRequest(BaseModel):
    user_id: int
    items: list[ItemRequest]


class CompleteCartRequest(BaseModel):
    user_id: int


def _items(items: list[ItemRequest]) -> list[Item]:
    return [Item(i.product_id, i.unit_price, i.quantity) for i in items]


def _cart_response(cart: Cart) -> dict:
    return {
        "id": cart.id,
        "user_id": cart.user_id,
        "items": [
            {
                "product_id": item.product_id,
                "unit_price": float(item.unit_price),
                "quantity": item.quantity,
                "total_price": float(item.total_price),
            }
            for item in cart.items
        ],
        "total_price": float(cart.total_price),
        "completed": cart.completed,
    }


async def _incomplete_cart(commands: CartCommandAdapter, cart_id: int, user_id: int) -> Cart:
    cart = await commands.get_by_id_and_user(cart_id, user_id)
    if cart is None:
        raise HTTPException(404, "Shopping cart not found")
    if cart.completed:
        raise HTTPException(409, "Shopping cart already completed")
    return cart


# ── Command Endpoints (イベント発行のみ) ─────────

@app.post("/commands/carts", status_code=202)
async def cmd_create_cart(req: CreateCartRequest, request: Request):
    """カート作成コマンド。採番した ID を返すが、作成されたかは後続の読み取りで確認する。"""
    commands: CartCommandAdapter = request.app.state.commands
    cart = Cart.from_items(req.user_id, _items(req.items))
    published = await commands.create(cart)
    return {"id": cart.id, "published": published}


@app.put("/commands/carts/{cart_id}/items", status_code=202)
async def cmd_update_items(cart_id: int, req: UpdateItemsRequest, request: Request):
    """明細更新コマンド。合計金額はここで明細から計算して渡す。"""
    commands: CartCommandAdapter = request.app.state.commands
    await _incomplete_cart(commands, cart_id, req.user_id)
    cart = Cart.from_items(req.user_id, _items(req.items), id=cart_id)
    return {"id": cart_id, "published": await commands.update_items(cart)}


@app.post("/commands/carts/{cart_id}/complete", status_code=202)
async def cmd_complete_cart(cart_id: int, req: CompleteCartRequest, request: Request):
    """完了コマンド。読み取った時点の合計金額で完了を要求する。"""
    commands: CartCommandAdapter = request.app.state.commands
    cart = await _incomplete_cart(commands, cart_id, req.user_id)
    return {"id": cart_id, "published": await commands.complete(cart)}


@app.delete("/commands/carts/{cart_id}", status_code=202)
async def cmd_delete_cart(cart_id: int, user_id: int, request: Request):
    commands: CartCommandAdapter = request.app.state.commands
    if await commands.get_by_id_and_user(cart_id, user_id) is None:
        raise HTTPException(404, "Shopping cart not found")
    return {"id": cart_id, "published": await commands.delete(cart_id)}


# ── Query Endpoints (ストア直接読み取り) ─────────

@app.get("/queries/carts/incomplete")
async def query_incomplete_cart(user_id: int, request: Request):
    cart = await request.app.state.commands.get_incomplete_by_user(user_id)
    if cart is None:
        raise HTTPException(404, "Shopping cart not found")
    return _cart_response(cart)


@app.get("/queries/carts/{cart_id}")
async def query_cart(cart_id: int, user_id: int, request: Request):
    cart = await request.app.state.commands.get_by_id_and_user(cart_id, user_id)
    if cart is None:
        raise HTTPException(404, "Shopping cart not found")
    return _cart_response(cart)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "purchases-service"}
