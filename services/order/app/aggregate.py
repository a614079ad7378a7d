"""
Order Service: 注文集約 (Order Aggregate)

状態遷移（Saga から見た場合）:
    Pending → Confirmed  (全明細の在庫引き当て成功)
    Pending → Cancelled  (引き当て失敗 = 補償)

Shipped / Delivered は Saga の外で管理者が設定する。
ステータスの遷移グラフは強制しない（既知のステータスなら何からでも設定できる）。
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict


class OrderStatus(str, Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    CANCELLED = "Cancelled"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"

    @classmethod
    def parse(cls, name: str) -> "OrderStatus | None":
        """ステータス名を大文字小文字を区別せずに解釈する。未知なら None。"""
        normalized = (name or "").strip().lower()
        for status in cls:
            if status.value.lower() == normalized:
                return status
        return None


class OrderLine(BaseModel):
    """注文リクエストの明細（価格は Saga が Inventory Service から取得する）"""
    product_id: int
    quantity: int


class OrderItem(BaseModel):
    """
    注文明細

    product_name / unit_price は検証時点の商品情報のスナップショット。
    後から商品の価格が変わっても過去の注文は変わらない。
    """
    model_config = ConfigDict(frozen=True)

    product_id: int
    product_name: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal


class Order(BaseModel):
    id: str
    customer_id: str
    created_at: datetime
    status: OrderStatus
    total_amount: Decimal
    items: list[OrderItem]


def reservation_key(order_id: str, position: int) -> str:
    """明細ごとの引き当て冪等キー。position は注文内での明細の順番。"""
    return f"{order_id}:{position}"
