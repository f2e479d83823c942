"""
支付仓储实现 - 使用SQLAlchemy实现数据访问

状态变更全部使用带条件的 UPDATE（compare-and-set），通过 rowcount 判断是否命中；
读取使用 populate_existing，确保条件更新之后读到的是数据库中的最新值。
"""
from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.common.exceptions import ActivePaymentExistsException, DuplicateProviderRefException
from domain.payment.entity import NON_TERMINAL_PAYMENT_STATUSES, Payment, PaymentProvider, PaymentStatus
from domain.payment.repository import PaymentRepository
from infrastructure.models.payment import PaymentModel


logger = get_logger(__name__)


class SQLAlchemyPaymentRepository(PaymentRepository):
    """支付仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentModel) -> Payment:
        """将数据库模型转换为领域实体"""
        return Payment(
            id=model.id,
            order_id=model.order_id,
            provider=PaymentProvider(model.provider),
            amount=model.amount,
            currency=model.currency,
            status=PaymentStatus(model.status),
            attempt=model.attempt,
            provider_ref=model.provider_ref,
            refunded_amount=model.refunded_amount or 0,
            last_provider_payload=model.last_provider_payload,
            confirmed_at=model.confirmed_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, entity: Payment) -> PaymentModel:
        """将领域实体转换为数据库模型"""
        return PaymentModel(
            id=entity.id,
            order_id=entity.order_id,
            attempt=entity.attempt,
            provider=entity.provider.value,
            provider_ref=entity.provider_ref,
            amount=entity.amount,
            currency=entity.currency,
            refunded_amount=entity.refunded_amount,
            status=entity.status.value,
            last_provider_payload=entity.last_provider_payload,
            confirmed_at=entity.confirmed_at,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
        )

    async def _fetch_one(self, *criteria) -> Optional[Payment]:
        result = await self.session.execute(
            select(PaymentModel)
            .where(*criteria)
            .execution_options(populate_existing=True)
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def create(self, payment: Payment) -> Payment:
        """创建支付记录"""
        try:
            db_payment = self._to_model(payment)
            self.session.add(db_payment)
            await self.session.flush()
            logger.info(
                "payment_opened",
                payment_id=db_payment.id,
                order_id=db_payment.order_id,
                provider=db_payment.provider,
                attempt=db_payment.attempt,
            )
            return self._to_entity(db_payment)
        except IntegrityError as e:
            await self.session.rollback()
            msg = str(e).lower()
            if "order_id" in msg and ("unique" in msg or "duplicate" in msg):
                logger.warning("payment_open_conflict", order_id=payment.order_id)
                raise ActivePaymentExistsException(payment.order_id) from e
            raise

    async def get_by_id(self, payment_id: str) -> Optional[Payment]:
        """根据ID获取支付"""
        return await self._fetch_one(PaymentModel.id == payment_id)

    async def get_by_provider_ref(self, provider: PaymentProvider, provider_ref: str) -> Optional[Payment]:
        """根据支付渠道引用ID获取支付"""
        return await self._fetch_one(
            PaymentModel.provider == PaymentProvider(provider).value,
            PaymentModel.provider_ref == provider_ref,
        )

    async def get_active_for_order(self, order_id: str) -> Optional[Payment]:
        return await self._fetch_one(
            PaymentModel.order_id == order_id,
            PaymentModel.status.in_([s.value for s in NON_TERMINAL_PAYMENT_STATUSES]),
        )

    async def list_by_order(self, order_id: str) -> List[Payment]:
        result = await self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.order_id == order_id)
            .order_by(PaymentModel.attempt.asc())
            .execution_options(populate_existing=True)
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def count_by_order(self, order_id: str) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(PaymentModel).where(PaymentModel.order_id == order_id)
        )
        return int(result.scalar_one())

    async def list_stale_pending(self, updated_before: datetime, limit: int = 100) -> List[Payment]:
        result = await self.session.execute(
            select(PaymentModel)
            .where(
                PaymentModel.status == PaymentStatus.PENDING.value,
                PaymentModel.provider_ref.is_not(None),
                PaymentModel.updated_at < updated_before,
            )
            .order_by(PaymentModel.updated_at.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def set_provider_ref(
        self,
        payment_id: str,
        provider: PaymentProvider,
        provider_ref: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> bool:
        values: dict[str, Any] = {
            "provider_ref": provider_ref,
            "updated_at": datetime.now(timezone.utc),
        }
        if payload is not None:
            values["last_provider_payload"] = payload
        try:
            result = await self.session.execute(
                update(PaymentModel)
                .where(
                    PaymentModel.id == payment_id,
                    PaymentModel.provider == PaymentProvider(provider).value,
                    PaymentModel.provider_ref.is_(None),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        except IntegrityError as e:
            await self.session.rollback()
            logger.warning("payment_provider_ref_conflict", payment_id=payment_id, provider_ref=provider_ref)
            raise DuplicateProviderRefException(PaymentProvider(provider).value, provider_ref) from e

        if result.rowcount > 0:
            logger.info("payment_provider_ref_attached", payment_id=payment_id, provider_ref=provider_ref)
            return True
        return False

    async def compare_and_set_status(
        self,
        payment_id: str,
        from_status: PaymentStatus,
        to_status: PaymentStatus,
        *,
        payload: Optional[dict[str, Any]] = None,
        confirmed_at: Optional[datetime] = None,
    ) -> bool:
        values: dict[str, Any] = {
            "status": to_status.value,
            "updated_at": datetime.now(timezone.utc),
        }
        if payload is not None:
            values["last_provider_payload"] = payload
        if confirmed_at is not None:
            values["confirmed_at"] = confirmed_at

        result = await self.session.execute(
            update(PaymentModel)
            .where(PaymentModel.id == payment_id, PaymentModel.status == from_status.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount > 0:
            logger.info(
                "payment_status_changed",
                payment_id=payment_id,
                from_status=from_status.value,
                to_status=to_status.value,
            )
            return True
        return False

    async def save_payload(self, payment_id: str, payload: dict[str, Any]) -> None:
        await self.session.execute(
            update(PaymentModel)
            .where(PaymentModel.id == payment_id)
            .values(last_provider_payload=payload, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )

    async def add_refunded_amount(self, payment_id: str, amount: int, payload: Optional[dict[str, Any]] = None) -> bool:
        values: dict[str, Any] = {
            "refunded_amount": PaymentModel.refunded_amount + amount,
            "updated_at": datetime.now(timezone.utc),
        }
        if payload is not None:
            values["last_provider_payload"] = payload
        result = await self.session.execute(
            update(PaymentModel)
            .where(
                PaymentModel.id == payment_id,
                PaymentModel.status == PaymentStatus.COMPLETED.value,
                PaymentModel.refunded_amount + amount <= PaymentModel.amount,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount > 0:
            logger.info("payment_refund_amount_recorded", payment_id=payment_id, amount=amount)
            return True
        return False
