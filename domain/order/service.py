"""
订单状态机 - 订单生命周期的唯一修改者

职责：
1. 校验并执行 checkout / capture / webhook / 退款流程请求的状态迁移
2. 每次迁移都是对当前状态的条件更新，并追加状态历史
3. 产生领域事件（OrderPaid / OrderCancelled / OrderRefunded）

MarkPaid 需要在调用方的同一事务内校验支付状态（而非事先校验），
因此状态机同时持有订单与支付仓储。
"""
from datetime import datetime, timezone
from typing import List, Optional

from .entity import Order, OrderStatus, ensure_order_transition, new_order_id
from .events import OrderCancelled, OrderEvent, OrderPaid, OrderRefunded
from .repository import OrderRepository
from domain.common.exceptions import (
    AlreadySettledException,
    DomainValidationException,
    IllegalTransitionException,
    OrderNotFoundException,
    PaymentNotFoundException,
    StaleTransitionException,
)
from domain.payment.entity import Payment, PaymentStatus
from domain.payment.repository import PaymentRepository


class OrderStateMachine:
    """订单状态机"""

    def __init__(self, order_repository: OrderRepository, payment_repository: PaymentRepository):
        self.order_repository = order_repository
        self.payment_repository = payment_repository
        self.events: List[OrderEvent] = []

    async def create(self, amount: int, currency: str) -> Order:
        now = datetime.now(timezone.utc)
        order = Order(
            id=new_order_id(),
            amount=amount,
            currency=currency,
            status=OrderStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        return await self.order_repository.create(order)

    async def get(self, order_id: str) -> Order:
        order = await self.order_repository.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundException(order_id)
        return order

    async def mark_paid(self, order_id: str, payment_id: str) -> Order:
        """
        标记订单已支付

        业务规则：
        1. 支付必须属于该订单且状态为 completed
        2. 订单必须为 pending
        3. 已由同一支付结清时为幂等空操作；由其他支付结清时抛出 AlreadySettledException
        """
        order = await self.get(order_id)
        payment = await self._get_payment(payment_id)
        self._ensure_owned(order, payment)

        if order.status == OrderStatus.PAID:
            return self._settled_by(order, payment_id)
        if payment.status != PaymentStatus.COMPLETED:
            raise IllegalTransitionException("order", order_id, order.status.value, OrderStatus.PAID.value)
        ensure_order_transition(order_id, order.status, OrderStatus.PAID)

        if not await self._compare_and_set(order, OrderStatus.PAID, payment_id=payment_id):
            current = await self.get(order_id)
            if current.status == OrderStatus.PAID:
                return self._settled_by(current, payment_id)
            raise StaleTransitionException(order_id, order.status.value, current.status.value)

        self.events.append(OrderPaid(order_id=order_id, payment_id=payment_id))
        return await self.get(order_id)

    async def cancel(self, order_id: str, reason: str, payment_id: Optional[str] = None) -> Order:
        """取消订单：只允许从 pending 迁移；已取消时为幂等空操作"""
        order = await self.get(order_id)
        if order.status == OrderStatus.CANCELLED:
            return order
        ensure_order_transition(order_id, order.status, OrderStatus.CANCELLED)

        if not await self._compare_and_set(order, OrderStatus.CANCELLED, payment_id=payment_id, reason=reason):
            current = await self.get(order_id)
            if current.status == OrderStatus.CANCELLED:
                return current
            raise StaleTransitionException(order_id, order.status.value, current.status.value)

        self.events.append(OrderCancelled(order_id=order_id, payment_id=payment_id, reason=reason))
        return await self.get(order_id)

    async def refund(self, order_id: str) -> Payment:
        """
        校验退款请求并返回需要退款的支付

        只允许从 paid 发起；真正的网关退款由应用层调用，订单状态在网关确认后
        通过 complete_refund 迁移。
        """
        order = await self.get(order_id)
        ensure_order_transition(order_id, order.status, OrderStatus.REFUNDED)
        if not order.payment_ref:
            raise IllegalTransitionException("order", order_id, order.status.value, OrderStatus.REFUNDED.value)
        payment = await self._get_payment(order.payment_ref)
        if payment.status != PaymentStatus.COMPLETED:
            raise IllegalTransitionException(
                "payment", payment.id, payment.status.value, PaymentStatus.REFUNDED.value
            )
        return payment

    async def complete_refund(self, order_id: str, payment_id: str) -> Order:
        """网关确认退款后的完成钩子：paid -> refunded，重复调用为空操作"""
        order = await self.get(order_id)
        if order.payment_ref is not None and order.payment_ref != payment_id:
            raise AlreadySettledException(order_id, order.payment_ref, payment_id)
        if order.status == OrderStatus.REFUNDED:
            return order
        ensure_order_transition(order_id, order.status, OrderStatus.REFUNDED)

        if not await self._compare_and_set(order, OrderStatus.REFUNDED, payment_id=payment_id):
            current = await self.get(order_id)
            if current.status == OrderStatus.REFUNDED:
                return current
            raise StaleTransitionException(order_id, order.status.value, current.status.value)

        self.events.append(OrderRefunded(order_id=order_id, payment_id=payment_id))
        return await self.get(order_id)

    def clear_events(self) -> List[OrderEvent]:
        """清空并返回领域事件"""
        events = self.events.copy()
        self.events.clear()
        return events

    async def _get_payment(self, payment_id: str) -> Payment:
        payment = await self.payment_repository.get_by_id(payment_id)
        if payment is None:
            raise PaymentNotFoundException(payment_id)
        return payment

    @staticmethod
    def _ensure_owned(order: Order, payment: Payment) -> None:
        if payment.order_id != order.id:
            raise DomainValidationException(
                "支付不属于该订单",
                field="payment_id",
                details={"order_id": order.id, "payment_id": payment.id},
            )

    @staticmethod
    def _settled_by(order: Order, payment_id: str) -> Order:
        if order.payment_ref == payment_id:
            return order
        raise AlreadySettledException(order.id, order.payment_ref, payment_id)

    async def _compare_and_set(
        self,
        order: Order,
        target: OrderStatus,
        *,
        payment_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        return await self.order_repository.compare_and_set_status(
            order.id,
            order.status,
            target,
            changed_at=datetime.now(timezone.utc),
            payment_id=payment_id,
            reason=reason,
        )
