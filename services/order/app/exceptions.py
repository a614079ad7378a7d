"""
Order Service: 例外定義

在庫不足・商品なしなど業務上の拒否は例外ではなく SagaResult で返す。
ここにあるのは呼び出し元にエラーとして返すものだけ。
"""

from typing import Any


class OrderError(Exception):
    """Order Service の例外の基底クラス"""

    status_code = 500
    code = "internal_error"

    def __init__(self, detail: str, context: dict[str, Any] | None = None):
        self.detail = detail
        self.context = context or {}
        super().__init__(detail)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.detail,
                "context": self.context,
            }
        }


class InvalidOrderInput(OrderError):
    """空の明細、0 以下の数量など。副作用の前に拒否する。"""

    status_code = 422
    code = "invalid_input"


class OrderNotFound(OrderError):
    status_code = 404
    code = "not_found"


class AccessDenied(OrderError):
    status_code = 403
    code = "forbidden"


class DependencyUnavailable(OrderError):
    """依存サービスに到達できない、またはタイムアウトした"""

    status_code = 503
    code = "dependency_unavailable"


class InventoryUnavailable(DependencyUnavailable):
    code = "inventory_unavailable"


class OrderStoreUnavailable(DependencyUnavailable):
    code = "order_store_unavailable"
