"""
Stock Service — 例外定義
"""


class StockError(Exception):
    """在庫ドメインの例外の基底クラス"""


class InsufficientStock(StockError):
    """候補バッチを使い切っても要求数量に届かなかった"""

    def __init__(self, message: str, *, requested: int = 0, taken: int = 0) -> None:
        super().__init__(message)
        self.requested = requested
        self.taken = taken


class StockConflict(InsufficientStock):
    """条件付き減算が 0 行だった (同時更新 or 数量不足)"""


class TransferFailure(StockError):
    """ロケーション間移動の失敗。Resolver はこれを部分提供へのフォールバックとして扱う。"""


class TransactionFailure(StockError):
    """
    Unit of Work の失敗を一律に表す。

    cause には元の例外が入る (__cause__ にも連鎖される)。
    ロールバック自体が失敗した場合は rollback_error に保持する。
    """

    def __init__(
        self,
        message: str,
        *,
        cause: BaseException | None = None,
        rollback_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.cause = cause
        self.rollback_error = rollback_error
