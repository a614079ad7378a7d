"""
Order Service: 注文ストア

Saga から見た Order Store の境界。
呼び出しごとにセッションを開き、commands / queries に委譲する。
DB のエラーは OrderStoreUnavailable に変換する。
"""

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import commands, queries
from .aggregate import Order, OrderItem, OrderStatus
from .exceptions import OrderStoreUnavailable

logger = logging.getLogger(__name__)


class OrderStore:
    def __init__(self, async_session_factory: sessionmaker):
        self.async_session = async_session_factory

    async def create(
        self,
        order_id: str,
        customer_id: str,
        items: list[OrderItem],
        total_amount: Decimal,
    ) -> Order:
        try:
            async with self.async_session() as session:
                return await commands.create_order(
                    session, order_id, customer_id, items, total_amount
                )
        except SQLAlchemyError as e:
            logger.exception("Failed to create order %s", order_id)
            raise OrderStoreUnavailable("Order store unavailable", {"order_id": order_id}) from e

    async def update_status(self, order_id: str, status: OrderStatus) -> bool:
        try:
            async with self.async_session() as session:
                return await commands.update_status(session, order_id, status)
        except SQLAlchemyError as e:
            logger.exception("Failed to update order %s to %s", order_id, status.value)
            raise OrderStoreUnavailable("Order store unavailable", {"order_id": order_id}) from e

    async def get(self, order_id: str) -> Order | None:
        try:
            async with self.async_session() as session:
                return await queries.get_order(session, order_id)
        except SQLAlchemyError as e:
            raise OrderStoreUnavailable("Order store unavailable", {"order_id": order_id}) from e

    async def list_all(self) -> list[Order]:
        try:
            async with self.async_session() as session:
                return await queries.list_orders(session)
        except SQLAlchemyError as e:
            raise OrderStoreUnavailable("Order store unavailable") from e

    async def list_by_customer(self, customer_id: str) -> list[Order]:
        try:
            async with self.async_session() as session:
                return await queries.list_orders_by_customer(session, customer_id)
        except SQLAlchemyError as e:
            raise OrderStoreUnavailable("Order store unavailable", {"customer_id": customer_id}) from e

    async def list_pending_before(self, cutoff: datetime) -> list[Order]:
        try:
            async with self.async_session() as session:
                return await queries.list_pending_before(session, cutoff)
        except SQLAlchemyError as e:
            raise OrderStoreUnavailable("Order store unavailable") from e
