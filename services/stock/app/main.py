"""
Stock Service — FastAPI エントリーポイント

店舗在庫の引き当てサービス。売場 → メイン倉庫 → WEB の順に在庫を探し、
期限の近いバッチから減算する。
"""

import os
from contextlib import asynccontextmanager
from datetime import date

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import create_async_engine

from . import commands, db, queries
from .errors import InsufficientStock, TransactionFailure, TransferFailure
from .event_bus import EventBus, RedisEventPublisher
from .inventory_store import InventoryStore
from .models import StockLocation
from .order_ids import OrderIdGenerator
from .policies import BatchDeduction, ordering_for
from .resolver import PolicyDecider, StockResolver
from .shortages import ShortageRecorder
from .unit_of_work import UnitOfWork

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL")
STOCK_EVENTS_CHANNEL = os.environ.get("STOCK_EVENTS_CHANNEL", "stock_events")
BATCH_POLICY = os.environ.get("BATCH_POLICY", "FEFO")


def parse_threshold(raw: str) -> int | None:
    """空文字 / none は低在庫チェックを無効にする"""
    if raw.strip().lower() in ("", "none"):
        return None
    return int(raw)


LOW_STOCK_THRESHOLD = parse_threshold(os.environ.get("LOW_STOCK_THRESHOLD", "50"))
ISOLATE_EVENT_HANDLERS = os.environ.get("ISOLATE_EVENT_HANDLERS", "false").lower() in (
    "1",
    "true",
    "yes",
)

engine = create_async_engine(DATABASE_URL, echo=False)
uow = UnitOfWork(db.connector(engine))
store = InventoryStore()
deduction = BatchDeduction(store, ordering_for(BATCH_POLICY))
shortages = ShortageRecorder(uow, store)
bus = EventBus(isolate_handlers=ISOLATE_EVENT_HANDLERS)
order_ids = OrderIdGenerator()
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    await db.init_schema(engine)
    if REDIS_URL:
        redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
        bus.subscribe(RedisEventPublisher(redis_pool, STOCK_EVENTS_CHANNEL))
    yield
    if redis_pool is not None:
        await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Stock Service", lifespan=lifespan)


# ── Request Models ───────────────────────────────


class AllocateRequest(BaseModel):
    quantity: int = Field(gt=0)
    location: StockLocation = StockLocation.SHELF
    approve_transfers: bool = False
    accept_partial: bool = False


class ReceiveRequest(BaseModel):
    quantity: int
    expiry: date | None = None


class TransferRequest(BaseModel):
    from_location: StockLocation
    to_location: StockLocation
    quantity: int


class DeductRequest(BaseModel):
    quantity: int = Field(gt=0)
    location: StockLocation = StockLocation.SHELF
    up_to: bool = False


def _resolver(req: AllocateRequest) -> StockResolver:
    return StockResolver(
        uow,
        store,
        deduction,
        PolicyDecider(req.approve_transfers, req.accept_partial),
        shortages,
        bus=bus,
        order_ids=order_ids,
        low_stock_threshold=LOW_STOCK_THRESHOLD,
    )


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/stock/{product_code}/allocate")
async def cmd_allocate(product_code: str, req: AllocateRequest):
    """売場での引き当て。移動・部分提供の可否はリクエストのフラグで判断する。"""
    try:
        result = await _resolver(req).resolve(product_code, req.quantity, req.location)
    except TransactionFailure as e:
        raise HTTPException(status_code=409, detail=str(e))
    return result.model_dump()


@app.post("/commands/stock/{product_code}/receive")
async def cmd_receive(product_code: str, req: ReceiveRequest):
    """仕入先からの入荷 (MAIN_STORE)"""
    try:
        batch_id = await commands.receive_batch(
            uow, store, product_code, req.quantity, expiry=req.expiry
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"success": True, "batch_id": batch_id}


@app.post("/commands/stock/{product_code}/transfer")
async def cmd_transfer(product_code: str, req: TransferRequest):
    """ロケーション間の在庫移動"""
    try:
        await commands.transfer_stock(
            uow, store, product_code, req.from_location, req.to_location, req.quantity
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except TransferFailure as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"success": True}


@app.post("/commands/stock/{product_code}/deduct")
async def cmd_deduct(product_code: str, req: DeductRequest):
    """指定ロケーションから直接減算する。up_to=true なら取れるだけ取る。"""
    try:
        if req.up_to:
            taken = await commands.deduct_up_to(
                uow, deduction, product_code, req.quantity, req.location
            )
        else:
            await commands.deduct(uow, deduction, product_code, req.quantity, req.location)
            taken = req.quantity
    except TransactionFailure as e:
        reason = "Insufficient stock" if isinstance(e.cause, InsufficientStock) else "Transaction failed"
        raise HTTPException(status_code=409, detail=f"{reason}: {e}")
    return {"success": True, "taken": taken}


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/stock/{product_code}")
async def query_availability(product_code: str):
    return await queries.availability(uow, store, product_code)


@app.get("/queries/stock/{product_code}/batches")
async def query_batches(product_code: str, location: StockLocation | None = None):
    return await queries.list_batches(uow, store, product_code, location)


@app.get("/queries/shortages")
async def query_shortages():
    return await shortages.list()


@app.get("/health")
async def health():
    return {"status": "ok", "service": "stock-service"}
