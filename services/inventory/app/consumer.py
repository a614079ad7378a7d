"""
Inventory Service: stock-updates コンシューマ

Order Service が注文確定時に発行する StockUpdateEvent を購読する。

イベントの reservation_key は Saga が同期で引き当てたときと同じキーなので、
reserve_stock は台帳で重複を検出して在庫を変更しない。
Saga を経由しない経路（同期呼び出しが届かなかった場合など）では
ここで初めて引き当てが反映される。

キーを持たないイベントは冪等にできないため通知として記録するだけにする。
"""

import asyncio
import logging

from sqlalchemy.orm import sessionmaker

from services.shared.events import StockUpdateEvent
from services.shared.messaging import RedisStreamChannel

from . import commands

logger = logging.getLogger(__name__)


async def on_stock_update_event(
    async_session_factory: sessionmaker,
    event: StockUpdateEvent,
) -> bool:
    """
    StockUpdateEvent を処理する。在庫の引き当てが有効なら True。

    DB エラーなどの例外はそのまま送出し、チャネル側で再配送させる。
    """
    if not event.reservation_key:
        logger.info(
            "Stock update for product %s (%s units) has no reservation key; recorded only",
            event.product_id, event.quantity,
        )
        return False

    logger.info(
        "Processing stock update for product %s: %s units (%s)",
        event.product_id, event.quantity, event.reservation_key,
    )
    async with async_session_factory() as session:
        applied = await commands.reserve_stock(
            session,
            event.product_id,
            event.quantity,
            reservation_key=event.reservation_key,
        )

    if applied:
        logger.info("Stock update processed successfully for product %s", event.product_id)
    else:
        logger.warning("Failed to process stock update for product %s", event.product_id)
    return applied


async def run_stock_update_consumer(
    channel: RedisStreamChannel,
    async_session_factory: sessionmaker,
    topic: str,
    shutdown_event: asyncio.Event,
) -> None:
    """shutdown_event がセットされるまで topic を 1 件ずつ処理する。"""

    async def handle(event: StockUpdateEvent) -> None:
        await on_stock_update_event(async_session_factory, event)

    logger.info("Starting stock update consumer on %s", topic)
    await channel.consume(topic, StockUpdateEvent, handle, shutdown_event)
    logger.info("Stock update consumer stopped")
