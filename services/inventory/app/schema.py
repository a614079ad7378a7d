"""
Inventory Service: テーブル定義

products           商品と在庫数 (quantity_on_hand)
stock_reservations 引き当ての冪等キー台帳
                   同じキーでの引き当て・解放を 1 回だけ反映するために使う
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
)
from sqlalchemy.ext.asyncio import AsyncEngine

RESERVED = "reserved"
RELEASED = "released"

metadata = MetaData()

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("description", String(500), nullable=False, default=""),
    Column("unit_price", Numeric(12, 2), nullable=False),
    Column("quantity_on_hand", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("quantity_on_hand >= 0", name="ck_products_quantity_on_hand"),
)

stock_reservations = Table(
    "stock_reservations",
    metadata,
    Column("reservation_key", String(100), primary_key=True),
    Column("product_id", Integer, nullable=False, index=True),
    Column("quantity", Integer, nullable=False),
    Column("status", String(20), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
