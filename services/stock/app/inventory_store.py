"""
Stock Service — 在庫ストア

バッチ単位の在庫テーブルに対する読み書き。すべて呼び出し側から渡された
接続 (Unit of Work 内の conn) の上で実行し、コミットはしない。
数量の減算は条件付き UPDATE で行うので、数量がマイナスになることはない。
"""

import logging
from datetime import date, datetime, timezone

from sqlalchemy import Date, DateTime, Integer, String, bindparam, text

from .errors import StockConflict, TransferFailure
from .models import Batch, StockLocation

logger = logging.getLogger(__name__)

_BATCH_COLUMNS = dict(
    id=Integer,
    product_code=String,
    location=String,
    received_at=DateTime(timezone=True),
    expiry=Date,
    quantity=Integer,
)


class InventoryStore:
    async def total_available(self, conn, location: StockLocation, product_code: str) -> int:
        result = await conn.execute(
            text("""
                SELECT COALESCE(SUM(quantity), 0) AS q
                FROM stock_batches
                WHERE product_code = :code AND location = :loc
            """),
            {"code": product_code, "loc": StockLocation(location).value},
        )
        return int(result.scalar_one())

    async def find_deduction_candidates(
        self, conn, product_code: str, location: StockLocation
    ) -> list[Batch]:
        """期限の近い順 (期限なしは最後)、同じなら入荷の古い順。"""
        result = await conn.execute(
            text("""
                SELECT id, product_code, location, received_at, expiry, quantity
                FROM stock_batches
                WHERE product_code = :code AND location = :loc AND quantity > 0
                ORDER BY CASE WHEN expiry IS NULL THEN 1 ELSE 0 END,
                         expiry ASC, received_at ASC, id ASC
            """).columns(**_BATCH_COLUMNS),
            {"code": product_code, "loc": StockLocation(location).value},
        )
        return [Batch.model_validate(dict(row._mapping)) for row in result.fetchall()]

    async def deduct_from_batch(self, conn, batch_id: int, quantity: int) -> None:
        result = await conn.execute(
            text("""
                UPDATE stock_batches
                SET quantity = quantity - :take
                WHERE id = :id AND quantity >= :take
            """),
            {"take": quantity, "id": batch_id},
        )
        if result.rowcount == 0:
            raise StockConflict(
                f"Concurrent update or insufficient qty for batch {batch_id}",
                requested=quantity,
            )

    async def insert_batch(
        self,
        conn,
        product_code: str,
        location: StockLocation,
        quantity: int,
        expiry: date | None = None,
        received_at: datetime | None = None,
    ) -> int:
        result = await conn.execute(
            text("""
                INSERT INTO stock_batches
                    (product_code, location, received_at, expiry, quantity)
                VALUES
                    (:code, :loc, :received_at, :expiry, :qty)
                RETURNING id
            """).bindparams(
                bindparam("received_at", type_=DateTime(timezone=True)),
                bindparam("expiry", type_=Date),
            ),
            {
                "code": product_code,
                "loc": StockLocation(location).value,
                "received_at": received_at or datetime.now(timezone.utc),
                "expiry": expiry,
                "qty": quantity,
            },
        )
        return int(result.scalar_one())

    async def transfer_stock(
        self,
        conn,
        product_code: str,
        from_location: StockLocation,
        to_location: StockLocation,
        quantity: int,
    ) -> None:
        """
        from → to へ quantity を移動する。

        移動元のバッチを期限順に消費し、同じ期限・入荷時刻のバッチを
        移動先に作る。移動先でも FEFO の順序が崩れない。
        """
        if quantity <= 0:
            raise ValueError("Transfer quantity must be positive")
        if from_location == to_location:
            raise ValueError("Source and destination locations cannot be the same")

        available = await self.total_available(conn, from_location, product_code)
        if available < quantity:
            raise TransferFailure(
                f"Insufficient stock at {StockLocation(from_location).value}. "
                f"Available: {available}, Requested: {quantity}"
            )

        remaining = quantity
        for batch in await self.find_deduction_candidates(conn, product_code, from_location):
            if remaining <= 0:
                break
            take = min(remaining, batch.quantity)
            if take <= 0:
                continue
            await self.deduct_from_batch(conn, batch.id, take)
            await self.insert_batch(
                conn,
                product_code,
                to_location,
                take,
                expiry=batch.expiry,
                received_at=batch.received_at,
            )
            remaining -= take

        if remaining > 0:
            raise TransferFailure(
                f"Transfer of {product_code} interrupted: {remaining} of {quantity} not moved"
            )
        logger.debug(
            "Moved %d x %s %s -> %s",
            quantity,
            product_code,
            StockLocation(from_location).value,
            StockLocation(to_location).value,
        )

    async def list_batches(
        self,
        conn,
        product_code: str | None = None,
        location: StockLocation | None = None,
    ) -> list[Batch]:
        conditions = ["1 = 1"]
        params: dict = {}
        if product_code is not None:
            conditions.append("product_code = :code")
            params["code"] = product_code
        if location is not None:
            conditions.append("location = :loc")
            params["loc"] = StockLocation(location).value

        where = " AND ".join(conditions)
        result = await conn.execute(
            text(f"""
                SELECT id, product_code, location, received_at, expiry, quantity
                FROM stock_batches
                WHERE {where}
                ORDER BY product_code, location,
                         CASE WHEN expiry IS NULL THEN 1 ELSE 0 END,
                         expiry ASC, received_at ASC, id ASC
            """).columns(**_BATCH_COLUMNS),
            params,
        )
        return [Batch.model_validate(dict(row._mapping)) for row in result.fetchall()]

    async def save_shortage(self, conn, message: str | None) -> None:
        await conn.execute(
            text("""
                INSERT INTO shortage_events (message, created_at)
                VALUES (:message, :now)
            """).bindparams(bindparam("now", type_=DateTime(timezone=True))),
            {"message": message, "now": datetime.now(timezone.utc)},
        )

    async def list_shortages(self, conn) -> list[str]:
        result = await conn.execute(
            text("SELECT message FROM shortage_events ORDER BY id ASC"),
        )
        return [row.message for row in result.fetchall()]
