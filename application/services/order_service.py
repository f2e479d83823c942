"""
订单应用服务（application/services）- 供结账协作方创建与查询订单
"""
from typing import Callable

from application.dtos.payments import CreateOrder, OrderDTO
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.service import OrderStateMachine
from domain.payment.service import PaymentLedger


logger = get_logger(__name__)


class OrderService:
    """订单应用服务"""

    def __init__(self, uow_factory: Callable[..., AbstractUnitOfWork]):
        self._uow_factory = uow_factory

    async def create_order(self, data: CreateOrder) -> OrderDTO:
        """创建待支付订单"""
        async with self._uow_factory() as uow:
            machine = OrderStateMachine(uow.order_repository, uow.payment_repository)
            order = await machine.create(data.amount, data.currency)
            history = await uow.order_repository.list_history(order.id)

        logger.info("order_created", order_id=order.id, amount=order.amount, currency=order.currency)
        return OrderDTO.from_entity(order, payments=[], history=history)

    async def get_order(self, order_id: str) -> OrderDTO:
        """获取订单及其支付尝试与状态历史"""
        async with self._uow_factory(readonly=True) as uow:
            machine = OrderStateMachine(uow.order_repository, uow.payment_repository)
            order = await machine.get(order_id)
            payments = await PaymentLedger(uow.payment_repository).list_for_order(order_id)
            history = await uow.order_repository.list_history(order_id)
            return OrderDTO.from_entity(order, payments=payments, history=history)
