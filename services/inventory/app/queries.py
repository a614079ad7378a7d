"""
Inventory Service: クエリハンドラ (CQRS Read 側)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import Product
from .schema import products


async def get_product(session: AsyncSession, product_id: int) -> Product | None:
    result = await session.execute(select(products).where(products.c.id == product_id))
    row = result.fetchone()
    if not row:
        return None
    return Product.from_row(row)


async def list_products(session: AsyncSession) -> list[Product]:
    result = await session.execute(select(products).order_by(products.c.name))
    return [Product.from_row(row) for row in result.fetchall()]


async def check_availability(session: AsyncSession, product_id: int, quantity: int) -> bool:
    """
    在庫が quantity 以上あるかを返す（引き当てはしない）。

    あくまで目安。実際の確保は commands.reserve_stock の
    条件付き UPDATE だけが保証する。
    """
    result = await session.execute(
        select(products.c.quantity_on_hand).where(products.c.id == product_id)
    )
    on_hand = result.scalar_one_or_none()
    return on_hand is not None and on_hand >= quantity
