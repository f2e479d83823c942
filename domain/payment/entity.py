"""
支付领域实体 - 支付尝试（Payment attempt）

一个订单可以累积多条 Payment 记录（例如失败后重试），但同一时刻最多只有
一条处于非终态（pending）。状态迁移只允许：

    pending -> completed
    pending -> failed
    completed -> refunded
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from domain.common.exceptions import DomainValidationException, IllegalTransitionException


class PaymentStatus(str, Enum):
    """支付状态枚举"""
    PENDING = "pending"        # 已创建，等待网关结果
    COMPLETED = "completed"    # 网关确认成功
    FAILED = "failed"          # 网关明确失败
    REFUNDED = "refunded"      # 已退款


class PaymentProvider(str, Enum):
    """支付渠道"""
    CARD_WALLET = "card_wallet"
    MOBILE_MONEY = "mobile_money"


ALLOWED_PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

NON_TERMINAL_PAYMENT_STATUSES = frozenset({PaymentStatus.PENDING})


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def new_payment_id() -> str:
    return f"pay_{uuid.uuid4().hex}"


def ensure_payment_transition(payment_id: str, current: PaymentStatus, target: PaymentStatus) -> None:
    """校验状态迁移是否合法，非法时抛出 IllegalTransitionException"""
    if target not in ALLOWED_PAYMENT_TRANSITIONS[current]:
        raise IllegalTransitionException("payment", payment_id, current.value, target.value)


@dataclass
class Payment:
    """
    支付实体

    业务规则：
    1. 金额（最小货币单位）必须大于0
    2. (provider, provider_ref) 一旦设置必须唯一
    3. 状态迁移必须遵循 ALLOWED_PAYMENT_TRANSITIONS
    4. 按金额退款在受理时累加 refunded_amount，支付保持 completed，累计不超过 amount
    """

    id: str
    order_id: str
    provider: PaymentProvider
    amount: int  # minor units
    currency: str  # ISO-4217
    status: PaymentStatus = PaymentStatus.PENDING
    attempt: int = 1
    provider_ref: Optional[str] = None
    refunded_amount: int = 0  # amount refunds accepted so far, minor units
    last_provider_payload: Optional[dict[str, Any]] = None
    confirmed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.provider = PaymentProvider(self.provider)
        self.status = PaymentStatus(self.status)
        self._validate_amount()
        self._validate_currency()
        self.currency = self.currency.upper()
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.confirmed_at = _ensure_utc(self.confirmed_at)

    def _validate_amount(self) -> None:
        """业务规则：金额必须为正整数（最小货币单位）"""
        if isinstance(self.amount, bool) or not isinstance(self.amount, int) or self.amount <= 0:
            raise DomainValidationException(
                f"支付金额必须为正整数: {self.amount}",
                field="amount",
            )

    def _validate_currency(self) -> None:
        """业务规则：货币代码必须是3位字母"""
        if not self.currency or len(self.currency) != 3 or not self.currency.isalpha():
            raise DomainValidationException(
                f"无效的货币代码: {self.currency}",
                field="currency",
            )

    @property
    def refundable_amount(self) -> int:
        return self.amount - self.refunded_amount

    @property
    def is_active(self) -> bool:
        return self.status in NON_TERMINAL_PAYMENT_STATUSES

    def can_transition_to(self, target: PaymentStatus) -> bool:
        return target in ALLOWED_PAYMENT_TRANSITIONS[self.status]


@dataclass(frozen=True)
class LedgerTransition:
    """账本状态迁移结果；applied 为 False 表示目标状态早已生效（幂等）"""

    payment: Payment
    applied: bool
    previous_status: PaymentStatus
