"""
Inventory Service: 商品 (Product)

在庫数 quantity_on_hand を変更できるのは Inventory Service だけ。
変更は commands の原子的な UPDATE 文を通してのみ行う。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class Product(BaseModel):
    id: int
    name: str
    description: str = ""
    unit_price: Decimal
    quantity_on_hand: int
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row) -> "Product":
        return cls(
            id=row.id,
            name=row.name,
            description=row.description,
            unit_price=row.unit_price,
            quantity_on_hand=row.quantity_on_hand,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )
