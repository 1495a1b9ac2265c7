"""
Stock Service — 欠品の記録

欠品メッセージを自分専用の Unit of Work で保存する。
販売側のトランザクションとは独立して成功・失敗する。
"""

from .unit_of_work import UnitOfWork


class ShortageRecorder:
    def __init__(self, uow: UnitOfWork, store) -> None:
        self.uow = uow
        self.store = store

    async def record(self, message: str | None) -> None:
        await self.uow.run(lambda conn: self.store.save_shortage(conn, message))

    async def list(self) -> list[str]:
        return await self.uow.run(self.store.list_shortages)
