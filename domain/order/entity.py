"""
订单领域实体 - 订单聚合根

订单生命周期：

    pending -> paid -> refunded
    pending -> cancelled

cancelled 与 refunded 为终态；paid 只能迁移到 refunded。
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from domain.common.exceptions import DomainValidationException, IllegalTransitionException


class OrderStatus(str, Enum):
    """订单状态枚举"""
    PENDING = "pending"        # 待支付
    PAID = "paid"              # 已支付
    CANCELLED = "cancelled"    # 已取消
    REFUNDED = "refunded"      # 已退款


ALLOWED_ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def new_order_id() -> str:
    return f"ord_{uuid.uuid4().hex}"


def ensure_order_transition(order_id: str, current: OrderStatus, target: OrderStatus) -> None:
    """校验订单状态迁移，非法时抛出 IllegalTransitionException"""
    if target not in ALLOWED_ORDER_TRANSITIONS[current]:
        raise IllegalTransitionException("order", order_id, current.value, target.value)


@dataclass
class Order:
    """
    订单聚合根

    业务规则：
    1. 金额以最小货币单位（整数）存储，必须大于0
    2. 货币代码为3位字母
    3. 只能由订单状态机修改状态
    """

    id: str
    amount: int
    currency: str
    status: OrderStatus = OrderStatus.PENDING
    payment_ref: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.status = OrderStatus(self.status)
        if isinstance(self.amount, bool) or not isinstance(self.amount, int) or self.amount <= 0:
            raise DomainValidationException(f"订单金额必须为正整数: {self.amount}", field="amount")
        if not self.currency or len(self.currency) != 3 or not self.currency.isalpha():
            raise DomainValidationException(f"无效的货币代码: {self.currency}", field="currency")
        self.currency = self.currency.upper()
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.paid_at = _ensure_utc(self.paid_at)
        self.refunded_at = _ensure_utc(self.refunded_at)

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_ORDER_TRANSITIONS[self.status]


@dataclass(frozen=True)
class OrderStatusChange:
    """订单状态历史（只追加）"""

    order_id: str
    from_status: Optional[OrderStatus]
    to_status: OrderStatus
    payment_id: Optional[str] = None
    reason: Optional[str] = None
    created_at: Optional[datetime] = None
