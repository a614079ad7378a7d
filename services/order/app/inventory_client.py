"""
Order Service: Inventory Service クライアント

Saga は在庫の確認・引き当て・解放をすべて HTTP で Inventory Service に依頼する。
呼び出し元の Authorization ヘッダをそのまま転送する（権限の昇格・降格はしない）。
共有クライアントのデフォルトヘッダは書き換えず、リクエストごとに付ける。

到達不能・タイムアウト・5xx は InventoryUnavailable として送出する。
引き当ての場合、これは「成功したかどうか分からない」結果を意味する。
"""

import logging
from decimal import Decimal

import httpx
from pydantic import BaseModel

from .exceptions import InventoryUnavailable

logger = logging.getLogger(__name__)


class CatalogProduct(BaseModel):
    """Inventory Service から取得した商品情報"""
    id: int
    name: str
    unit_price: Decimal
    quantity_on_hand: int


class InventoryClient:
    def __init__(
        self,
        base_url: str = "",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get_product(
        self, product_id: int, authorization: str | None = None
    ) -> CatalogProduct | None:
        resp = await self._request(
            "GET", f"/queries/products/{product_id}", authorization, product_id=product_id
        )
        if resp.status_code == 404:
            return None
        self._raise_for_status(resp, product_id)
        return CatalogProduct.model_validate(resp.json())

    async def check_availability(
        self, product_id: int, quantity: int, authorization: str | None = None
    ) -> bool:
        resp = await self._request(
            "GET",
            f"/queries/products/{product_id}/availability",
            authorization,
            product_id=product_id,
            params={"quantity": quantity},
        )
        if resp.status_code == 404:
            return False
        self._raise_for_status(resp, product_id)
        return bool(resp.json()["available"])

    async def reserve_stock(
        self,
        product_id: int,
        quantity: int,
        reservation_key: str | None = None,
        authorization: str | None = None,
    ) -> bool:
        resp = await self._request(
            "POST",
            f"/commands/products/{product_id}/reserve",
            authorization,
            product_id=product_id,
            json={"quantity": quantity, "reservation_key": reservation_key},
        )
        if resp.status_code == 409:
            return False
        self._raise_for_status(resp, product_id)
        logger.info("Successfully reserved %s units of product %s", quantity, product_id)
        return True

    async def release_stock(
        self,
        product_id: int,
        quantity: int,
        reservation_key: str | None = None,
        authorization: str | None = None,
    ) -> bool:
        resp = await self._request(
            "POST",
            f"/commands/products/{product_id}/release",
            authorization,
            product_id=product_id,
            json={"quantity": quantity, "reservation_key": reservation_key},
        )
        self._raise_for_status(resp, product_id)
        return bool(resp.json().get("released", False))

    async def _request(
        self,
        method: str,
        url: str,
        authorization: str | None,
        product_id: int,
        **kwargs,
    ) -> httpx.Response:
        headers = {"Authorization": authorization} if authorization else {}
        try:
            return await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.error("Inventory request %s %s failed: %s", method, url, e)
            raise InventoryUnavailable(
                "Inventory service unavailable", {"product_id": product_id}
            ) from e

    @staticmethod
    def _raise_for_status(resp: httpx.Response, product_id: int) -> None:
        if resp.is_success:
            return
        logger.warning(
            "Inventory request %s %s returned %s",
            resp.request.method, resp.request.url, resp.status_code,
        )
        raise InventoryUnavailable(
            "Inventory service unavailable",
            {"product_id": product_id, "status_code": resp.status_code},
        )
