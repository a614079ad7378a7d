"""
Order Service: コマンドハンドラ (CQRS の Write 側)

注文レコードの書き込みはすべてここを通る。
ステータス更新は 1 文の UPDATE で行い、レコード単位で原子的にする
（同じ注文への同時更新は後勝ち）。
"""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import insert, update
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import Order, OrderItem, OrderStatus
from .schema import order_items, orders


async def create_order(
    session: AsyncSession,
    order_id: str,
    customer_id: str,
    items: list[OrderItem],
    total_amount: Decimal,
) -> Order:
    """
    注文作成コマンド

    注文と明細を 1 トランザクションで Pending として保存する。
    明細は position（送信順）付きで保存し、補償や照合で同じ順番を再現できるようにする。
    """
    now = datetime.now(timezone.utc)
    await session.execute(
        insert(orders).values(
            id=order_id,
            customer_id=customer_id,
            status=OrderStatus.PENDING.value,
            total_amount=total_amount,
            created_at=now,
            updated_at=now,
        )
    )
    await session.execute(
        insert(order_items),
        [
            {
                "order_id": order_id,
                "position": position,
                "product_id": item.product_id,
                "product_name": item.product_name,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "total_price": item.total_price,
            }
            for position, item in enumerate(items)
        ],
    )
    await session.commit()

    return Order(
        id=order_id,
        customer_id=customer_id,
        created_at=now,
        status=OrderStatus.PENDING,
        total_amount=total_amount,
        items=items,
    )


async def update_status(session: AsyncSession, order_id: str, status: OrderStatus) -> bool:
    """ステータス更新コマンド。注文が存在しなければ False。"""
    result = await session.execute(
        update(orders)
        .where(orders.c.id == order_id)
        .values(status=status.value, updated_at=datetime.now(timezone.utc))
    )
    await session.commit()
    return result.rowcount == 1
