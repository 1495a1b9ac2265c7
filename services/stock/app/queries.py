"""
Stock Service — クエリハンドラ (Read 側)

在庫数は呼び出しのたびにストアから読み直す。
"""

from .models import StockLocation
from .unit_of_work import UnitOfWork


async def available(
    uow: UnitOfWork, store, product_code: str, location: StockLocation
) -> int:
    return await uow.run(lambda conn: store.total_available(conn, location, product_code))


async def availability(uow: UnitOfWork, store, product_code: str) -> dict:
    async def read_all(conn) -> dict:
        return {
            loc.value: await store.total_available(conn, loc, product_code)
            for loc in StockLocation
        }

    by_location = await uow.run(read_all)
    return {
        "product_code": product_code,
        "locations": by_location,
        "total": sum(by_location.values()),
    }


async def list_batches(
    uow: UnitOfWork,
    store,
    product_code: str | None = None,
    location: StockLocation | None = None,
) -> list[dict]:
    batches = await uow.run(lambda conn: store.list_batches(conn, product_code, location))
    return [
        {
            "id": b.id,
            "product_code": b.product_code,
            "location": b.location.value,
            "received_at": b.received_at.isoformat(),
            "expiry": b.expiry.isoformat() if b.expiry else None,
            "quantity": b.quantity,
        }
        for b in batches
    ]
