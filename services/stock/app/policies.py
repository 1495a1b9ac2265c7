"""
Stock Service — バッチ引き当てポリシー

引き当て順序はクラス階層ではなくデータ (BatchOrdering) として表す。
減算アルゴリズム BatchDeduction は 1 つだけで、順序を注入して使う。

  FEFO: 期限の近い順 (期限なしは最後)、同じ期限なら入荷の古い順
  FIFO: 入荷の古い順のみ。期限は見ない

ストアの候補クエリは FEFO の順で返す。FIFO はそれを入荷時刻で並べ直す。
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable

from .errors import InsufficientStock
from .models import Batch, StockLocation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchOrdering:
    name: str
    sort_key: Callable[[Batch], Any]

    def order(self, batches: list[Batch]) -> list[Batch]:
        return sorted(batches, key=self.sort_key)


def _expiry_first(batch: Batch):
    return (batch.expiry is None, batch.expiry or date.max, batch.received_at)


def _received_first(batch: Batch):
    return batch.received_at


FEFO = BatchOrdering("FEFO", _expiry_first)
FIFO = BatchOrdering("FIFO", _received_first)

ORDERINGS = {o.name: o for o in (FEFO, FIFO)}


def ordering_for(name: str) -> BatchOrdering:
    try:
        return ORDERINGS[name.strip().upper()]
    except KeyError:
        raise ValueError(f"Unknown batch policy: {name}") from None


class BatchDeduction:
    """順序付きの候補バッチから数量を消費する。"""

    def __init__(self, store, ordering: BatchOrdering = FEFO) -> None:
        self.store = store
        self.ordering = ordering

    async def candidates(self, conn, product_code: str, location: StockLocation) -> list[Batch]:
        batches = await self.store.find_deduction_candidates(conn, product_code, location)
        return self.ordering.order(batches)

    async def deduct(
        self, conn, product_code: str, quantity: int, location: StockLocation
    ) -> None:
        """
        quantity を全量減算する。足りなければ InsufficientStock。

        途中まで減算したバッチは戻さない。取り消しは外側の Unit of Work が
        ロールバックで行う。
        """
        taken = await self._consume(conn, product_code, quantity, location)
        if taken < quantity:
            raise InsufficientStock(
                f"Insufficient stock for {product_code} at "
                f"{StockLocation(location).value} need={quantity} taken={taken}",
                requested=quantity,
                taken=taken,
            )

    async def deduct_up_to(
        self, conn, product_code: str, quantity: int, location: StockLocation
    ) -> int:
        """最大 quantity まで減算し、実際に減算した数量を返す。"""
        return await self._consume(conn, product_code, quantity, location)

    async def _consume(
        self, conn, product_code: str, quantity: int, location: StockLocation
    ) -> int:
        if quantity < 0:
            raise ValueError(f"Quantity must not be negative, got: {quantity}")
        remaining = quantity
        for batch in await self.candidates(conn, product_code, location):
            if remaining <= 0:
                break
            take = min(remaining, batch.quantity)
            if take > 0:
                await self.store.deduct_from_batch(conn, batch.id, take)
                remaining -= take
        taken = quantity - remaining
        logger.debug(
            "%s deducted %d/%d of %s at %s",
            self.ordering.name,
            taken,
            quantity,
            product_code,
            StockLocation(location).value,
        )
        return taken
