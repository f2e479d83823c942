"""
支付仓储接口 - 定义支付数据访问的抽象接口

状态变更一律通过条件更新（compare-and-set）完成，实现方返回是否命中，
由领域服务决定命中失败时的语义。
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, List, Optional

from .entity import Payment, PaymentProvider, PaymentStatus


class PaymentRepository(ABC):
    """支付仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def create(self, payment: Payment) -> Payment:
        """创建支付记录；违反活跃支付唯一约束时抛出 ActivePaymentExistsException"""
        pass

    @abstractmethod
    async def get_by_id(self, payment_id: str) -> Optional[Payment]:
        """根据ID获取支付"""
        pass

    @abstractmethod
    async def get_by_provider_ref(self, provider: PaymentProvider, provider_ref: str) -> Optional[Payment]:
        """根据支付渠道引用ID获取支付"""
        pass

    @abstractmethod
    async def get_active_for_order(self, order_id: str) -> Optional[Payment]:
        """获取订单当前的非终态支付"""
        pass

    @abstractmethod
    async def list_by_order(self, order_id: str) -> List[Payment]:
        """按尝试顺序列出订单的所有支付"""
        pass

    @abstractmethod
    async def count_by_order(self, order_id: str) -> int:
        """统计订单的支付尝试次数"""
        pass

    @abstractmethod
    async def list_stale_pending(self, updated_before: datetime, limit: int = 100) -> List[Payment]:
        """列出长时间未更新、且已关联渠道引用的 pending 支付"""
        pass

    @abstractmethod
    async def set_provider_ref(
        self,
        payment_id: str,
        provider: PaymentProvider,
        provider_ref: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> bool:
        """仅当 provider_ref 为空时写入；返回是否命中"""
        pass

    @abstractmethod
    async def compare_and_set_status(
        self,
        payment_id: str,
        from_status: PaymentStatus,
        to_status: PaymentStatus,
        *,
        payload: Optional[dict[str, Any]] = None,
        confirmed_at: Optional[datetime] = None,
    ) -> bool:
        """仅当当前状态等于 from_status 时更新；返回是否命中"""
        pass

    @abstractmethod
    async def save_payload(self, payment_id: str, payload: dict[str, Any]) -> None:
        """只更新诊断数据，不改变状态"""
        pass

    @abstractmethod
    async def add_refunded_amount(self, payment_id: str, amount: int, payload: Optional[dict[str, Any]] = None) -> bool:
        """completed 支付累加已受理的退款金额，累计不得超过支付金额；返回是否命中"""
        pass
