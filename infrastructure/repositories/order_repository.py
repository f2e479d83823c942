"""
订单仓储实现 - 使用SQLAlchemy实现数据访问
"""
from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.order.entity import Order, OrderStatus, OrderStatusChange
from domain.order.repository import OrderRepository
from infrastructure.models.order import OrderModel, OrderStatusHistoryModel


logger = get_logger(__name__)


class SQLAlchemyOrderRepository(OrderRepository):
    """订单仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: OrderModel) -> Order:
        """将数据库模型转换为领域实体"""
        return Order(
            id=model.id,
            amount=model.amount,
            currency=model.currency,
            status=OrderStatus(model.status),
            payment_ref=model.payment_ref,
            cancel_reason=model.cancel_reason,
            created_at=model.created_at,
            updated_at=model.updated_at,
            paid_at=model.paid_at,
            refunded_at=model.refunded_at,
        )

    def _to_model(self, entity: Order) -> OrderModel:
        """将领域实体转换为数据库模型"""
        return OrderModel(
            id=entity.id,
            amount=entity.amount,
            currency=entity.currency,
            status=entity.status.value,
            payment_ref=entity.payment_ref,
            cancel_reason=entity.cancel_reason,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
            paid_at=entity.paid_at,
            refunded_at=entity.refunded_at,
        )

    async def create(self, order: Order) -> Order:
        db_order = self._to_model(order)
        self.session.add(db_order)
        # 先落订单，再写引用它的历史记录
        await self.session.flush()
        self.session.add(
            OrderStatusHistoryModel(
                order_id=order.id,
                from_status=None,
                to_status=order.status.value,
                created_at=order.created_at,
            )
        )
        await self.session.flush()
        logger.info("order_created", order_id=order.id, amount=order.amount, currency=order.currency)
        return self._to_entity(db_order)

    async def get_by_id(self, order_id: str) -> Optional[Order]:
        result = await self.session.execute(
            select(OrderModel)
            .where(OrderModel.id == order_id)
            .execution_options(populate_existing=True)
        )
        db_order = result.scalar_one_or_none()
        return self._to_entity(db_order) if db_order else None

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
        values: dict[str, Any] = {"status": to_status.value, "updated_at": changed_at}
        if to_status == OrderStatus.PAID:
            values["payment_ref"] = payment_id
            values["paid_at"] = changed_at
        elif to_status == OrderStatus.CANCELLED:
            values["cancel_reason"] = reason
        elif to_status == OrderStatus.REFUNDED:
            values["refunded_at"] = changed_at

        result = await self.session.execute(
            update(OrderModel)
            .where(OrderModel.id == order_id, OrderModel.status == from_status.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False

        self.session.add(
            OrderStatusHistoryModel(
                order_id=order_id,
                from_status=from_status.value,
                to_status=to_status.value,
                payment_id=payment_id,
                reason=reason,
                created_at=changed_at,
            )
        )
        await self.session.flush()
        logger.info(
            "order_status_changed",
            order_id=order_id,
            from_status=from_status.value,
            to_status=to_status.value,
            payment_id=payment_id,
        )
        return True

    async def list_history(self, order_id: str) -> List[OrderStatusChange]:
        result = await self.session.execute(
            select(OrderStatusHistoryModel)
            .where(OrderStatusHistoryModel.order_id == order_id)
            .order_by(OrderStatusHistoryModel.id.asc())
        )
        return [
            OrderStatusChange(
                order_id=row.order_id,
                from_status=OrderStatus(row.from_status) if row.from_status else None,
                to_status=OrderStatus(row.to_status),
                payment_id=row.payment_id,
                reason=row.reason,
                created_at=row.created_at,
            )
            for row in result.scalars().all()
        ]
