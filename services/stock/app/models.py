"""
Stock Service — 在庫モデル

バッチ(Batch)は「ある商品が、ある場所に、ある時刻に入荷した数量」の
スナップショット。計画(引き当て順序の決定)には読み取り専用で使い、
実際の数量はストア側でのみ変更する。
"""

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class StockLocation(str, Enum):
    """
    在庫ロケーション。定義順がそのままエスカレーションの順序になる。

        SHELF (売場) → MAIN_STORE (メイン倉庫) → WEB (リザーブ)
    """

    SHELF = "SHELF"
    MAIN_STORE = "MAIN_STORE"
    WEB = "WEB"


class Batch(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    product_code: str
    location: StockLocation
    received_at: datetime
    expiry: date | None = None
    quantity: int = Field(ge=0)


class TransferLeg(BaseModel):
    model_config = ConfigDict(frozen=True)

    from_location: StockLocation
    to_location: StockLocation
    quantity: int

    def reversed(self) -> "TransferLeg":
        return TransferLeg(
            from_location=self.to_location,
            to_location=self.from_location,
            quantity=self.quantity,
        )


class ConfirmationKind(str, Enum):
    TRANSFER = "TRANSFER"
    TWO_STEP_TRANSFER = "TWO_STEP_TRANSFER"
    PARTIAL = "PARTIAL"


class ConfirmationRequest(BaseModel):
    """判断コールバック confirm(context) に渡すコンテキスト"""

    model_config = ConfigDict(frozen=True)

    kind: ConfirmationKind
    product_code: str
    requested_quantity: int
    quantity: int
    legs: list[TransferLeg] = []
    message: str = ""


class AllocationResult(BaseModel):
    allocation_id: str
    product_code: str
    requested: int
    fulfilled: int
    steps: list[dict] = []
