"""
Stock Service — イベント定義

在庫ドメインで発生するイベント。生成後は変更しない。
"""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from .models import StockLocation


def _now() -> datetime:
    return datetime.now(timezone.utc)


class StockEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=_now)

    @property
    def event_type(self) -> str:
        return type(self).__name__


class ShortageEvent(StockEvent):
    """全ロケーション合計でも要求数量を満たせなかった"""
    message: str
    product_code: str
    per_location: dict[StockLocation, int]
    total_available: int
    requested_quantity: int


class LowStock(StockEvent):
    """売場の残数がしきい値を下回った"""
    product_code: str
    location: StockLocation
    remaining: int
    threshold: int


class StockTransferred(StockEvent):
    """ロケーション間で在庫が移動された"""
    allocation_id: str | None = None
    product_code: str
    from_location: StockLocation
    to_location: StockLocation
    quantity: int


class TransferCompensated(StockEvent):
    """移動済みのレッグを逆方向の移動で取り消した（補償トランザクション）"""
    allocation_id: str
    product_code: str
    from_location: StockLocation
    to_location: StockLocation
    quantity: int


class StockAllocated(StockEvent):
    """引き当てが確定した"""
    allocation_id: str
    product_code: str
    location: StockLocation
    requested: int
    fulfilled: int
