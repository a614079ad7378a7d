"""
Shared: サービス間メッセージ定義

Order Service が発行し、Inventory Service が購読するメッセージ。
ストリーム上では JSON として流れる。
"""

from datetime import datetime, timezone

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StockUpdateEvent(BaseModel):
    """
    注文で確定した在庫の引き当て（明細 1 行につき 1 メッセージ）

    reservation_key は同期側の引き当てと同じ冪等キー。
    Inventory Service はこのキーで重複を検出するため、
    同期の引き当てと非同期のメッセージで在庫が二重に減ることはない。
    """
    product_id: int
    quantity: int
    order_id: str | None = None
    reservation_key: str | None = None
    timestamp: datetime = Field(default_factory=_utcnow)
