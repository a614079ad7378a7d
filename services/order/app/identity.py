"""
Order Service: 呼び出し元の識別

トークンの検証はゲートウェイの責務。ゲートウェイは検証済みの利用者を
X-User-Id / X-User-Role ヘッダで転送する。
Authorization ヘッダは Inventory Service への呼び出しにそのまま転送する。
"""

from fastapi import Depends, Header, HTTPException
from pydantic import BaseModel

from .aggregate import Order
from .exceptions import AccessDenied

ADMIN_ROLE = "Admin"


class Caller(BaseModel):
    user_id: str
    role: str | None = None
    authorization: str | None = None

    @property
    def is_admin(self) -> bool:
        return (self.role or "").lower() == ADMIN_ROLE.lower()


async def get_caller(
    x_user_id: str | None = Header(None),
    x_user_role: str | None = Header(None),
    authorization: str | None = Header(None),
) -> Caller:
    if not x_user_id:
        raise HTTPException(401, "Customer ID not found in token")
    return Caller(user_id=x_user_id, role=x_user_role, authorization=authorization)


async def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        raise AccessDenied("Admin role required")
    return caller


def ensure_can_access(caller: Caller, order: Order) -> None:
    """管理者以外は自分の注文だけを参照・キャンセルできる。"""
    if not caller.is_admin and order.customer_id != caller.user_id:
        raise AccessDenied("You can only access your own orders", {"order_id": order.id})
