"""
Order Saga Orchestrator: 注文・在庫 Saga

Saga パターン（オーケストレーション型）:
  中央のオーケストレーターが各サービスへのコマンド実行を制御する。
  分散トランザクションはないので、失敗時は補償トランザクションで整合性を保つ。

  フロー:
  ┌─────────────────────────────────────────────────────────────┐
  │  1. 各明細の商品を Inventory Service から取得し価格を確定     │
  │  2. 各明細の在庫を確認（目安。ここで失敗すれば何も残らない） │
  │  3. 注文を Pending で保存（ここから先、注文は必ず終端に至る） │
  │  4. 明細の順番どおりに在庫を引き当て                          │
  │     └─ 失敗 → それまでに引き当てた明細を解放 (補償)          │
  │              → 注文を Cancelled に                            │
  │  5. 明細ごとに StockUpdateEvent を stock-updates に発行       │
  │  6. 注文を Confirmed に                                       │
  └─────────────────────────────────────────────────────────────┘

状態遷移は 1 注文ごとに Pending → {Confirmed, Cancelled}。
補償の対象は例外の巻き戻しではなく、明示的な補償リスト (reserved) で管理する。
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from pydantic import BaseModel

from services.shared.events import StockUpdateEvent
from services.shared.messaging import MessageChannelError, RedisStreamChannel

from .aggregate import Order, OrderItem, OrderLine, OrderStatus, reservation_key
from .exceptions import InvalidOrderInput, InventoryUnavailable, OrderStoreUnavailable
from .inventory_client import InventoryClient
from .store import OrderStore

logger = logging.getLogger(__name__)

STOCK_UPDATES_TOPIC = "stock-updates"


class SagaResult(BaseModel):
    """
    Saga の実行結果

    success=False の場合 order は返さない（課金対象の注文 ID は渡さない）。
    """
    success: bool
    order: Order | None = None
    reason: str | None = None
    saga_log: list[dict] = []


@dataclass(frozen=True)
class Reservation:
    """補償リストの 1 件"""
    key: str
    product_id: int
    quantity: int


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class OrderSagaOrchestrator:
    """注文 Saga のオーケストレーター"""

    def __init__(
        self,
        inventory: InventoryClient,
        store: OrderStore,
        channel: RedisStreamChannel,
        stock_updates_topic: str = STOCK_UPDATES_TOPIC,
    ):
        self.inventory = inventory
        self.store = store
        self.channel = channel
        self.stock_updates_topic = stock_updates_topic

    # ── CreateOrder ──────────────────────────────

    async def create_order(
        self,
        customer_id: str,
        items: list[OrderLine],
        authorization: str | None = None,
    ) -> SagaResult:
        """
        Saga を実行する。

        入力不正は InvalidOrderInput、保存前の依存サービス障害は
        DependencyUnavailable として送出する（どちらも副作用なし）。
        在庫不足などの拒否は SagaResult(success=False) で返す。
        """
        _validate_input(customer_id, items)
        saga_log: list[dict] = []

        # ── Step 1 / 2: 商品の検証・価格確定と在庫確認 ──
        priced: list[OrderItem] = []
        for line in items:
            entry = _begin(saga_log, "ValidateItem", product_id=line.product_id)
            product = await self.inventory.get_product(line.product_id, authorization)
            if product is None:
                logger.warning("Product %s not found", line.product_id)
                return _rejected(saga_log, entry, f"Product {line.product_id} not found")

            available = await self.inventory.check_availability(
                line.product_id, line.quantity, authorization
            )
            if not available:
                logger.warning(
                    "Insufficient stock for product %s. Requested: %s",
                    line.product_id, line.quantity,
                )
                return _rejected(
                    saga_log, entry, f"Insufficient stock for product {line.product_id}"
                )

            priced.append(
                OrderItem(
                    product_id=line.product_id,
                    product_name=product.name,
                    quantity=line.quantity,
                    unit_price=product.unit_price,
                    total_price=product.unit_price * line.quantity,
                )
            )
            entry["status"] = "COMPLETED"

        total_amount = sum((item.total_price for item in priced), Decimal("0"))

        # ── Step 3: 注文を Pending で保存 ──────────
        order_id = str(uuid.uuid4())
        entry = _begin(saga_log, "CreateOrder", order_id=order_id)
        order = await self.store.create(order_id, customer_id, priced, total_amount)
        entry["status"] = "COMPLETED"
        logger.info(
            "Order %s created as Pending for customer %s with %d items",
            order.id, customer_id, len(order.items),
        )

        # ── Step 4: 明細の順番どおりに引き当て ──────
        reserved: list[Reservation] = []
        failure: str | None = None
        for position, item in enumerate(order.items):
            key = reservation_key(order.id, position)
            entry = _begin(saga_log, "ReserveStock", product_id=item.product_id, order_id=order.id)
            try:
                ok = await self.inventory.reserve_stock(
                    item.product_id, item.quantity, key, authorization
                )
            except InventoryUnavailable as e:
                # 結果が不明。引き当てられた可能性があるので補償リストに含める。
                reserved.append(Reservation(key, item.product_id, item.quantity))
                entry["status"] = "UNKNOWN"
                entry["error"] = e.detail
                failure = "Inventory service unavailable"
                logger.error(
                    "Reservation outcome unknown for product %s in order %s",
                    item.product_id, order.id,
                )
                break

            if not ok:
                entry["status"] = "FAILED"
                failure = f"Insufficient stock for product {item.product_id}"
                logger.error(
                    "Failed to reserve stock for product %s in order %s",
                    item.product_id, order.id,
                )
                break

            reserved.append(Reservation(key, item.product_id, item.quantity))
            entry["status"] = "COMPLETED"

        if failure is not None:
            await self._compensate(order.id, reserved, saga_log, authorization)
            await self._transition(order.id, OrderStatus.CANCELLED, saga_log, compensating=True)
            logger.warning("Order %s was cancelled: %s", order.id, failure)
            return SagaResult(success=False, reason=failure, saga_log=saga_log)

        # ── Step 5: StockUpdateEvent を発行 ────────
        for reservation in reserved:
            await self._publish_stock_update(order.id, reservation, saga_log)

        # ── Step 6: 注文を確定 ──────────────────────
        await self._transition(order.id, OrderStatus.CONFIRMED, saga_log)
        logger.info("Order %s confirmed for customer %s", order.id, customer_id)

        return SagaResult(
            success=True,
            order=order.model_copy(update={"status": OrderStatus.CONFIRMED}),
            saga_log=saga_log,
        )

    async def _compensate(
        self,
        order_id: str,
        reserved: list[Reservation],
        saga_log: list[dict],
        authorization: str | None,
    ) -> None:
        """
        補償トランザクション: 引き当てた順に在庫を解放する。

        ベストエフォート。失敗はログと saga_log に残し、その場で再試行はしない
        （キー付きなので照合処理から安全にやり直せる）。
        """
        for reservation in reserved:
            entry = _begin(
                saga_log,
                "ReleaseStock (COMPENSATING)",
                product_id=reservation.product_id,
                order_id=order_id,
            )
            try:
                await self.inventory.release_stock(
                    reservation.product_id,
                    reservation.quantity,
                    reservation.key,
                    authorization,
                )
                entry["status"] = "COMPLETED"
            except InventoryUnavailable as e:
                entry["status"] = "FAILED"
                entry["error"] = e.detail
                logger.error(
                    "Compensation failed: could not release %s units of product %s for order %s",
                    reservation.quantity, reservation.product_id, order_id,
                    exc_info=True,
                )

    async def _publish_stock_update(
        self, order_id: str, reservation: Reservation, saga_log: list[dict]
    ) -> None:
        """発行の失敗は記録するだけ。引き当て（正となる状態）は戻さない。"""
        entry = _begin(
            saga_log, "PublishStockUpdate", product_id=reservation.product_id, order_id=order_id
        )
        event = StockUpdateEvent(
            product_id=reservation.product_id,
            quantity=reservation.quantity,
            order_id=order_id,
            reservation_key=reservation.key,
        )
        try:
            await self.channel.publish(self.stock_updates_topic, event)
            entry["status"] = "COMPLETED"
        except MessageChannelError as e:
            entry["status"] = "FAILED"
            entry["error"] = str(e)
            logger.error(
                "Failed to publish stock update for product %s in order %s",
                reservation.product_id, order_id,
                exc_info=True,
            )

    async def _transition(
        self,
        order_id: str,
        status: OrderStatus,
        saga_log: list[dict],
        compensating: bool = False,
    ) -> None:
        action = f"{status.value}Order" + (" (COMPENSATING)" if compensating else "")
        entry = _begin(saga_log, action, order_id=order_id)
        try:
            await self.store.update_status(order_id, status)
            entry["status"] = "COMPLETED"
        except OrderStoreUnavailable as e:
            # 注文は Pending のまま残り、照合処理が Cancelled にする
            entry["status"] = "FAILED"
            entry["error"] = e.detail
            if not compensating:
                raise
            logger.error("Order %s left Pending after compensation", order_id)

    # ── ステータス操作 ────────────────────────────

    async def update_order_status(self, order_id: str, new_status: str) -> bool:
        """
        既知のステータス名なら何からでも設定できる（遷移グラフは強制しない）。
        未知のステータス・存在しない注文は False。
        """
        status = OrderStatus.parse(new_status)
        if status is None:
            logger.warning("Invalid order status: %s", new_status)
            return False

        updated = await self.store.update_status(order_id, status)
        if updated:
            logger.info("Order %s status updated to %s", order_id, status.value)
        return updated

    async def cancel_order(self, order_id: str) -> bool:
        """
        注文を Cancelled にする。

        在庫は解放しない。キャンセルに在庫の戻しを伴うべきかは未決定。
        """
        cancelled = await self.store.update_status(order_id, OrderStatus.CANCELLED)
        if cancelled:
            logger.info("Order %s cancelled", order_id)
        return cancelled

    # ── 照会 ──────────────────────────────────────

    async def get_order(self, order_id: str) -> Order | None:
        return await self.store.get(order_id)

    async def list_orders(self) -> list[Order]:
        return await self.store.list_all()

    async def list_orders_by_customer(self, customer_id: str) -> list[Order]:
        return await self.store.list_by_customer(customer_id)

    # ── 照合 (Pending のまま残った注文の後始末) ──

    async def reconcile_pending_orders(
        self,
        max_age: timedelta,
        authorization: str | None = None,
        now: datetime | None = None,
    ) -> list[str]:
        """
        max_age より古い Pending の注文を Cancelled にする。

        Saga が途中で止まった注文（プロセス停止、ステータス更新の失敗など）が
        対象。全明細の引き当てをキー付きで解放する。引き当てられていない
        キーの解放は Inventory Service 側で何もしないので、どの時点で
        止まっていても安全にやり直せる。
        """
        cutoff = (now or datetime.now(timezone.utc)) - max_age
        stale = await self.store.list_pending_before(cutoff)
        cancelled: list[str] = []

        for order in stale:
            saga_log: list[dict] = []
            reservations = [
                Reservation(reservation_key(order.id, position), item.product_id, item.quantity)
                for position, item in enumerate(order.items)
            ]
            await self._compensate(order.id, reservations, saga_log, authorization)
            if any(entry["status"] == "FAILED" for entry in saga_log):
                logger.error("Reconciliation of order %s incomplete; will retry", order.id)
                continue

            await self.store.update_status(order.id, OrderStatus.CANCELLED)
            cancelled.append(order.id)
            logger.warning("Stale pending order %s cancelled by reconciliation", order.id)

        return cancelled


def _validate_input(customer_id: str, items: list[OrderLine]) -> None:
    if not customer_id:
        raise InvalidOrderInput("Customer ID is required")
    if not items:
        raise InvalidOrderInput("Order must have at least one item")
    for line in items:
        if line.quantity <= 0:
            raise InvalidOrderInput(
                "Quantity must be at least 1", {"product_id": line.product_id}
            )
        if line.product_id <= 0:
            raise InvalidOrderInput(
                "Product ID must be valid", {"product_id": line.product_id}
            )


def _begin(saga_log: list[dict], action: str, **context) -> dict:
    entry = {
        "step": len(saga_log) + 1,
        "action": action,
        "status": "EXECUTING",
        "timestamp": _timestamp(),
        **context,
    }
    saga_log.append(entry)
    return entry


def _rejected(saga_log: list[dict], entry: dict, reason: str) -> SagaResult:
    entry["status"] = "FAILED"
    entry["error"] = reason
    return SagaResult(success=False, reason=reason, saga_log=saga_log)
