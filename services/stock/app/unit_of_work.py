"""
Stock Service — Unit of Work

1 つの作業 (work) をアトミックなトランザクションで包む。

  1. 接続を取得 (async with で必ず解放)
  2. 現在の autocommit モードを記録し、手動コミットに切り替える
  3. work(conn) を実行
     ├─ 成功 → commit → autocommit を元に戻す
     └─ 失敗 → rollback → autocommit を元に戻す → TransactionFailure
  4. 接続を解放

ロールバック自体が失敗しても、呼び出し側に届くメッセージは元の失敗のもの。
"""

import logging
from typing import Any, AsyncContextManager, Awaitable, Callable, Protocol, TypeVar

from .errors import TransactionFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransactionalConnection(Protocol):
    autocommit: bool

    async def set_autocommit(self, enabled: bool) -> None: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...


Work = Callable[[Any], Awaitable[T]]


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class UnitOfWork:
    def __init__(self, connect: Callable[[], AsyncContextManager[TransactionalConnection]]):
        self._connect = connect

    async def run(self, work: Work[T]) -> T:
        try:
            async with self._connect() as conn:
                previous = conn.autocommit
                await conn.set_autocommit(False)
                try:
                    result = await work(conn)
                    await conn.commit()
                except Exception as exc:
                    rollback_error = await self._rollback(conn, exc)
                    await self._restore_after_failure(conn, previous)
                    raise TransactionFailure(
                        _describe(exc), cause=exc, rollback_error=rollback_error
                    ) from exc
                await conn.set_autocommit(previous)
                return result
        except TransactionFailure:
            raise
        except Exception as exc:
            # 接続の取得・解放、autocommit の復元で失敗した場合
            raise TransactionFailure(_describe(exc), cause=exc) from exc

    async def _rollback(self, conn: TransactionalConnection, exc: Exception) -> Exception | None:
        try:
            await conn.rollback()
        except Exception as rollback_exc:
            logger.error(
                "Rollback failed after %s: %s", _describe(exc), _describe(rollback_exc)
            )
            return rollback_exc
        return None

    async def _restore_after_failure(self, conn: TransactionalConnection, previous: bool) -> None:
        try:
            await conn.set_autocommit(previous)
        except Exception:
            logger.exception("Failed to restore autocommit=%s", previous)
