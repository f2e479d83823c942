"""
API依赖项 - 应用服务的组装（composition root）
"""
from typing import Callable, Optional

from fastapi import Depends, Request

from application.ports.payment_gateway import PaymentGatewayResolver
from application.ports.task_dispatcher import PaymentTaskDispatcher
from application.services.order_service import OrderService
from application.services.reconciliation_service import ReconciliationService
from core.config import settings
from core.settings import PaymentSettings, payment_settings
from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.tasks import TaskDispatcher
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


def get_uow_factory() -> Callable[..., AbstractUnitOfWork]:
    return SQLAlchemyUnitOfWork


def get_payment_settings() -> PaymentSettings:
    return payment_settings


def get_payment_gateways(request: Request) -> PaymentGatewayResolver:
    """网关注册表由应用生命周期创建并持有"""
    return request.app.state.payment_gateways


def get_task_dispatcher() -> Optional[PaymentTaskDispatcher]:
    return TaskDispatcher()


def get_order_service(
    uow_factory: Callable[..., AbstractUnitOfWork] = Depends(get_uow_factory),
) -> OrderService:
    return OrderService(uow_factory=uow_factory)


def get_reconciliation_service(
    uow_factory: Callable[..., AbstractUnitOfWork] = Depends(get_uow_factory),
    gateways: PaymentGatewayResolver = Depends(get_payment_gateways),
    dispatcher: Optional[PaymentTaskDispatcher] = Depends(get_task_dispatcher),
    config: PaymentSettings = Depends(get_payment_settings),
) -> ReconciliationService:
    return ReconciliationService(
        uow_factory,
        gateways,
        settings=config,
        dispatcher=dispatcher,
        callback_base_url=settings.webhook_base_url,
    )
