"""
Stock Service — コマンドハンドラ (Write 側)

入荷・ロケーション間移動・直接減算。各コマンドは 1 つの Unit of Work で実行する。
Resolver の各移動レッグもこの transfer_stock を使うので、レッグごとに
独立してコミットされる (取り消しは Resolver の補償で行う)。
"""

import logging
from datetime import date, datetime

from .errors import TransactionFailure, TransferFailure
from .models import StockLocation
from .policies import BatchDeduction
from .unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


async def receive_batch(
    uow: UnitOfWork,
    store,
    product_code: str,
    quantity: int,
    expiry: date | None = None,
    received_at: datetime | None = None,
) -> int:
    """仕入先からの入荷。新しいバッチを MAIN_STORE に作る。"""
    if not product_code or not product_code.strip():
        raise ValueError("Product code cannot be empty")
    if quantity <= 0:
        raise ValueError("qty must be > 0")

    batch_id = await uow.run(
        lambda conn: store.insert_batch(
            conn,
            product_code,
            StockLocation.MAIN_STORE,
            quantity,
            expiry=expiry,
            received_at=received_at,
        )
    )
    logger.info("Received batch %s: %d x %s into MAIN_STORE", batch_id, quantity, product_code)
    return batch_id


async def transfer_stock(
    uow: UnitOfWork,
    store,
    product_code: str,
    from_location: StockLocation,
    to_location: StockLocation,
    quantity: int,
) -> None:
    """
    在庫移動コマンド

    入力チェックは ValueError。ストア側の失敗 (在庫不足・コミット失敗など) は
    すべて TransferFailure として返す。
    """
    if not product_code or not product_code.strip():
        raise ValueError("Product code cannot be empty")
    if quantity <= 0:
        raise ValueError(f"Quantity must be positive, got: {quantity}")
    if from_location is None:
        raise ValueError("Source location cannot be null")
    if to_location is None:
        raise ValueError("Destination location cannot be null")
    if from_location == to_location:
        raise ValueError("Source and destination locations cannot be the same")

    try:
        await uow.run(
            lambda conn: store.transfer_stock(
                conn, product_code, from_location, to_location, quantity
            )
        )
    except TransactionFailure as exc:
        raise TransferFailure(str(exc)) from exc

    logger.info(
        "Transferred %d x %s %s -> %s",
        quantity,
        product_code,
        StockLocation(from_location).value,
        StockLocation(to_location).value,
    )


async def deduct(
    uow: UnitOfWork,
    deduction: BatchDeduction,
    product_code: str,
    quantity: int,
    location: StockLocation,
) -> None:
    await uow.run(lambda conn: deduction.deduct(conn, product_code, quantity, location))


async def deduct_up_to(
    uow: UnitOfWork,
    deduction: BatchDeduction,
    product_code: str,
    quantity: int,
    location: StockLocation,
) -> int:
    return await uow.run(
        lambda conn: deduction.deduct_up_to(conn, product_code, quantity, location)
    )
