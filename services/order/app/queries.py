"""
Order Service: クエリハンドラ (CQRS の Read 側)
"""

from collections import defaultdict
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import Order, OrderItem, OrderStatus
from .schema import order_items, orders


async def get_order(session: AsyncSession, order_id: str) -> Order | None:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.fetchone()
    if not row:
        return None
    items = await _load_items(session, [row.id])
    return _to_order(row, items[row.id])


async def list_orders(session: AsyncSession) -> list[Order]:
    """全注文一覧（新しい順）"""
    return await _fetch_orders(session, select(orders).order_by(orders.c.created_at.desc()))


async def list_orders_by_customer(session: AsyncSession, customer_id: str) -> list[Order]:
    return await _fetch_orders(
        session,
        select(orders)
        .where(orders.c.customer_id == customer_id)
        .order_by(orders.c.created_at.desc()),
    )


async def list_pending_before(session: AsyncSession, cutoff: datetime) -> list[Order]:
    """cutoff より前に作成され、まだ Pending の注文（照合対象）"""
    return await _fetch_orders(
        session,
        select(orders)
        .where(
            orders.c.status == OrderStatus.PENDING.value,
            orders.c.created_at < cutoff,
        )
        .order_by(orders.c.created_at),
    )


async def _fetch_orders(session: AsyncSession, stmt) -> list[Order]:
    rows = (await session.execute(stmt)).fetchall()
    items = await _load_items(session, [row.id for row in rows])
    return [_to_order(row, items[row.id]) for row in rows]


async def _load_items(session: AsyncSession, order_ids: list[str]) -> dict[str, list[OrderItem]]:
    items: dict[str, list[OrderItem]] = defaultdict(list)
    if not order_ids:
        return items
    result = await session.execute(
        select(order_items)
        .where(order_items.c.order_id.in_(order_ids))
        .order_by(order_items.c.order_id, order_items.c.position)
    )
    for row in result.fetchall():
        items[row.order_id].append(
            OrderItem(
                product_id=row.product_id,
                product_name=row.product_name,
                quantity=row.quantity,
                unit_price=row.unit_price,
                total_price=row.total_price,
            )
        )
    return items


def _to_order(row, items: list[OrderItem]) -> Order:
    return Order(
        id=row.id,
        customer_id=row.customer_id,
        created_at=row.created_at,
        status=OrderStatus(row.status),
        total_amount=row.total_amount,
        items=items,
    )
