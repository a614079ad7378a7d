"""
Inventory Service: コマンドハンドラ (CQRS Write 側)

在庫の引き当て(Reserve)と解放(Release)を処理する。
Saga パターンで重要: 引き当てに失敗した場合、Order Service の Saga は
それまでに引き当てた明細を release_stock で戻す（補償トランザクション）。

在庫数を変更する経路は次の UPDATE 文だけ:

    UPDATE products
    SET quantity_on_hand = quantity_on_hand - :qty
    WHERE id = :id AND quantity_on_hand >= :qty

読み取ってから書き込むと、同じ商品の最後の在庫を取り合う 2 つの注文が
両方とも成功してしまう。条件付き UPDATE なら DB が 1 件ずつ直列化する。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import Product
from .queries import get_product
from .schema import RELEASED, RESERVED, products, stock_reservations

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── 商品管理 ─────────────────────────────────────


async def create_product(
    session: AsyncSession,
    name: str,
    unit_price: Decimal,
    quantity_on_hand: int,
    description: str = "",
) -> Product:
    now = _now()
    result = await session.execute(
        insert(products).values(
            name=name,
            description=description,
            unit_price=unit_price,
            quantity_on_hand=quantity_on_hand,
            created_at=now,
            updated_at=now,
        )
    )
    await session.commit()
    product_id = result.inserted_primary_key[0]
    logger.info("Product created with ID %s", product_id)
    return Product(
        id=product_id,
        name=name,
        description=description,
        unit_price=unit_price,
        quantity_on_hand=quantity_on_hand,
        created_at=now,
        updated_at=now,
    )


async def update_product(
    session: AsyncSession,
    product_id: int,
    name: str | None = None,
    description: str | None = None,
    unit_price: Decimal | None = None,
    quantity_on_hand: int | None = None,
) -> Product | None:
    """指定されたフィールドだけを更新する。"""
    values = {
        key: value
        for key, value in {
            "name": name,
            "description": description,
            "unit_price": unit_price,
            "quantity_on_hand": quantity_on_hand,
        }.items()
        if value is not None
    }
    values["updated_at"] = _now()

    result = await session.execute(
        update(products).where(products.c.id == product_id).values(**values)
    )
    if result.rowcount == 0:
        await session.rollback()
        return None
    await session.commit()
    logger.info("Product updated with ID %s", product_id)
    return await get_product(session, product_id)


async def set_stock(session: AsyncSession, product_id: int, quantity_on_hand: int) -> bool:
    result = await session.execute(
        update(products)
        .where(products.c.id == product_id)
        .values(quantity_on_hand=quantity_on_hand, updated_at=_now())
    )
    await session.commit()
    if result.rowcount == 0:
        return False
    logger.info("Stock updated for product %s to %s", product_id, quantity_on_hand)
    return True


# ── 引き当て / 解放 ──────────────────────────────


async def reserve_stock(
    session: AsyncSession,
    product_id: int,
    quantity: int,
    reservation_key: str | None = None,
) -> bool:
    """
    在庫引き当てコマンド

    quantity_on_hand >= quantity の場合だけ原子的に減算して True を返す。
    在庫不足・商品なしは例外ではなく False（リトライから機械的に呼ばれるため）。

    reservation_key を指定すると台帳に記録し、同じキーでの 2 回目以降は
    在庫を変更せずに前回の結果を返す。台帳の商品・数量と一致しない
    キーの再利用は False。
    台帳への INSERT と減算は同じトランザクションで、在庫不足なら両方戻す。
    """
    if quantity <= 0:
        return False

    now = _now()
    if reservation_key is not None:
        try:
            await session.execute(
                insert(stock_reservations).values(
                    reservation_key=reservation_key,
                    product_id=product_id,
                    quantity=quantity,
                    status=RESERVED,
                    created_at=now,
                    updated_at=now,
                )
            )
        except IntegrityError:
            # 同じキーが既に台帳にある = 重複リクエスト
            await session.rollback()
            recorded = await _reservation(session, reservation_key)
            if recorded.product_id != product_id or recorded.quantity != quantity:
                logger.warning(
                    "Reservation %s is recorded for product %s (%s units), not product %s (%s units)",
                    reservation_key, recorded.product_id, recorded.quantity, product_id, quantity,
                )
                return False
            logger.info(
                "Reservation %s for product %s already recorded (%s)",
                reservation_key, product_id, recorded.status,
            )
            return recorded.status == RESERVED

    result = await session.execute(
        update(products)
        .where(products.c.id == product_id, products.c.quantity_on_hand >= quantity)
        .values(
            quantity_on_hand=products.c.quantity_on_hand - quantity,
            updated_at=now,
        )
    )
    if result.rowcount != 1:
        await session.rollback()
        logger.warning(
            "Failed to reserve stock for product %s: %s units", product_id, quantity
        )
        return False

    await session.commit()
    logger.info("Stock reserved for product %s: %s units", product_id, quantity)
    return True


async def release_stock(
    session: AsyncSession,
    product_id: int,
    quantity: int,
    reservation_key: str | None = None,
) -> bool:
    """
    在庫解放コマンド（Saga の補償トランザクション）

    キーなし: 無条件に quantity を戻す。商品がなければ何もしない。
    キーあり: そのキーが引き当て済みの場合だけ、台帳の数量を戻す。
              台帳にないキーは released として記録し、
              遅れて届いた同じキーの引き当てを無効にする。

    実際に在庫を戻した場合に True を返す。
    """
    now = _now()
    if reservation_key is not None:
        result = await session.execute(
            select(stock_reservations).where(
                stock_reservations.c.reservation_key == reservation_key
            )
        )
        row = result.fetchone()
        if row is None:
            try:
                await session.execute(
                    insert(stock_reservations).values(
                        reservation_key=reservation_key,
                        product_id=product_id,
                        quantity=quantity,
                        status=RELEASED,
                        created_at=now,
                        updated_at=now,
                    )
                )
                await session.commit()
                logger.info("Reservation %s was never applied; recorded as released", reservation_key)
                return False
            except IntegrityError:
                # 同時に引き当てが記録された。状態を読み直して続行する。
                await session.rollback()
                result = await session.execute(
                    select(stock_reservations).where(
                        stock_reservations.c.reservation_key == reservation_key
                    )
                )
                row = result.fetchone()

        marked = await session.execute(
            update(stock_reservations)
            .where(
                stock_reservations.c.reservation_key == reservation_key,
                stock_reservations.c.status == RESERVED,
            )
            .values(status=RELEASED, updated_at=now)
        )
        if marked.rowcount != 1:
            await session.rollback()
            logger.info("Reservation %s already released", reservation_key)
            return False
        product_id, quantity = row.product_id, row.quantity

    if quantity <= 0:
        await session.rollback()
        return False

    result = await session.execute(
        update(products)
        .where(products.c.id == product_id)
        .values(
            quantity_on_hand=products.c.quantity_on_hand + quantity,
            updated_at=now,
        )
    )
    await session.commit()
    if result.rowcount != 1:
        logger.warning("Product %s not found while releasing %s units", product_id, quantity)
        return False

    logger.info("Stock released for product %s: %s units", product_id, quantity)
    return True


async def _reservation(session: AsyncSession, reservation_key: str):
    result = await session.execute(
        select(stock_reservations).where(
            stock_reservations.c.reservation_key == reservation_key
        )
    )
    return result.one()
