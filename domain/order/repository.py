"""
订单仓储接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from .entity import Order, OrderStatus, OrderStatusChange


class OrderRepository(ABC):
    """订单仓储抽象接口"""

    @abstractmethod
    async def create(self, order: Order) -> Order:
        """创建订单（同时写入初始状态历史）"""
        pass

    @abstractmethod
    async def get_by_id(self, order_id: str) -> Optional[Order]:
        """根据ID获取订单"""
        pass

    @abstractmethod
    async def compare_and_set_status(
        self,
        order_id: str,
        from_status: OrderStatus,
        to_status: OrderStatus,
        *,
        changed_at: datetime,
        payment_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """
        条件更新订单状态并追加历史记录；返回是否命中

        迁移到 paid 时同时写入 payment_ref，迁移到 cancelled 时写入 cancel_reason。
        """
        pass

    @abstractmethod
    async def list_history(self, order_id: str) -> List[OrderStatusChange]:
        """按时间顺序列出状态历史"""
        pass
