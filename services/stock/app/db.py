"""
Stock Service — データベース接続

SQLAlchemy の AsyncConnection を Unit of Work から扱えるようにする薄いアダプタと、
在庫テーブルの定義。クエリ自体は inventory_store で text() SQL として書く。
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

metadata = MetaData()

stock_batches = Table(
    "stock_batches",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("product_code", String(64), nullable=False, index=True),
    Column("location", String(16), nullable=False),
    Column("received_at", DateTime(timezone=True), nullable=False),
    Column("expiry", Date, nullable=True),
    Column("quantity", Integer, nullable=False),
    CheckConstraint("quantity >= 0", name="ck_stock_batches_quantity"),
)

shortage_events = Table(
    "shortage_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("message", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


async def init_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


class SqlConnection:
    """
    AsyncConnection のアダプタ。

    autocommit フラグはこのアダプタが適用した isolation_level を追跡する。
    False → True で AUTOCOMMIT に、True → False で dialect の既定レベルに戻す。
    """

    def __init__(self, connection: AsyncConnection, autocommit: bool = False) -> None:
        self.connection = connection
        self.autocommit = autocommit

    async def set_autocommit(self, enabled: bool) -> None:
        if enabled == self.autocommit:
            return
        level = "AUTOCOMMIT" if enabled else self.connection.default_isolation_level
        await self.connection.execution_options(isolation_level=level)
        self.autocommit = enabled

    async def execute(self, statement, parameters: dict | None = None):
        return await self.connection.execute(statement, parameters)

    async def commit(self) -> None:
        await self.connection.commit()

    async def rollback(self) -> None:
        await self.connection.rollback()


def connector(engine: AsyncEngine, autocommit: bool = False):
    """UnitOfWork に渡す接続ファクトリを作る。"""

    @asynccontextmanager
    async def connect() -> AsyncIterator[SqlConnection]:
        async with engine.connect() as conn:
            yield SqlConnection(conn, autocommit=autocommit)

    return connect
