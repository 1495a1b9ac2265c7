"""
Stock Service — イベントバス

プロセス内の同期 Pub/Sub。publish は購読順にハンドラを 1 つずつ await する。

既定ではハンドラ間の分離をしない: あるハンドラが例外を投げると、
同じ publish で後続のハンドラは呼ばれず、例外は publish した側に伝わる。
isolate_handlers=True のときは例外をログに残して次のハンドラへ進む。

RedisEventPublisher をハンドラとして購読させると、イベントを Redis の
チャネルにも流せる (他サービスのイベントチャネルと同じ JSON 形式)。
"""

import inspect
import json
import logging
import threading
from typing import Any, Awaitable, Callable

import redis.asyncio as aioredis

from .events import StockEvent

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None] | None]


class EventBus:
    def __init__(self, isolate_handlers: bool = False) -> None:
        self.isolate_handlers = isolate_handlers
        self._handlers: list[Handler] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: Handler) -> None:
        if not callable(handler):
            raise TypeError(f"Event handler must be callable, got {handler!r}")
        with self._lock:
            self._handlers.append(handler)

    @property
    def handlers(self) -> list[Handler]:
        with self._lock:
            return list(self._handlers)

    async def publish(self, event: Any) -> None:
        for handler in self.handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                if not self.isolate_handlers:
                    raise
                logger.exception(
                    "Event handler %r failed for %s", handler, type(event).__name__
                )


class RedisEventPublisher:
    """バスのイベントを Redis Pub/Sub に転送するハンドラ"""

    def __init__(self, redis: aioredis.Redis, channel: str = "stock_events") -> None:
        self.redis = redis
        self.channel = channel

    async def __call__(self, event: StockEvent) -> None:
        await self.redis.publish(
            self.channel,
            json.dumps(
                {
                    "event_type": event.event_type,
                    "data": event.model_dump(mode="json"),
                },
                default=str,
            ),
        )
