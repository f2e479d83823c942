"""
支付账本领域服务 - 支付尝试的持久记录

职责：
1. 保证每个订单同一时刻最多一条非终态支付（Open 守卫）
2. 记录渠道关联ID（provider_ref），检测重放/冲突
3. 记录网关已受理的按金额退款
"""
from datetime import datetime, timezone
from typing import Any, List, Optional

from .entity import (
    LedgerTransition,
    Payment,
    PaymentProvider,
    PaymentStatus,
    ensure_payment_transition,
    new_payment_id,
)
from .repository import PaymentRepository
from domain.common.exceptions import (
    ActivePaymentExistsException,
    DomainValidationException,
    DuplicateProviderRefException,
    PaymentNotFoundException,
    RefundNotAllowedException,
    StaleTransitionException,
)


class PaymentLedger:
    """支付账本：所有 Payment 状态变更的唯一入口"""

    def __init__(self, payment_repository: PaymentRepository):
        self.payment_repository = payment_repository

    async def get(self, payment_id: str) -> Payment:
        payment = await self.payment_repository.get_by_id(payment_id)
        if payment is None:
            raise PaymentNotFoundException(payment_id)
        return payment

    async def get_by_provider_ref(self, provider: PaymentProvider, provider_ref: str) -> Optional[Payment]:
        return await self.payment_repository.get_by_provider_ref(provider, provider_ref)

    async def get_active(self, order_id: str) -> Optional[Payment]:
        return await self.payment_repository.get_active_for_order(order_id)

    async def list_for_order(self, order_id: str) -> List[Payment]:
        return await self.payment_repository.list_by_order(order_id)

    async def list_stale_pending(self, updated_before: datetime, limit: int = 100) -> List[Payment]:
        return await self.payment_repository.list_stale_pending(updated_before, limit)

    async def open(
        self,
        order_id: str,
        provider: PaymentProvider,
        amount: int,
        currency: str,
    ) -> Payment:
        """
        开启一次支付尝试

        业务规则：订单已有非终态支付时抛出 ActivePaymentExistsException。
        预检查只用于快速失败，并发竞争由存储层的部分唯一索引裁决。
        """
        active = await self.payment_repository.get_active_for_order(order_id)
        if active is not None:
            raise ActivePaymentExistsException(order_id, active.id)

        attempt = await self.payment_repository.count_by_order(order_id) + 1
        now = datetime.now(timezone.utc)
        payment = Payment(
            id=new_payment_id(),
            order_id=order_id,
            provider=provider,
            amount=amount,
            currency=currency,
            status=PaymentStatus.PENDING,
            attempt=attempt,
            created_at=now,
            updated_at=now,
        )
        return await self.payment_repository.create(payment)

    async def attach_provider_ref(
        self,
        payment_id: str,
        provider_ref: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> Payment:
        """
        关联渠道引用ID

        同一支付重复关联相同ID视为幂等；ID 已属于同渠道的其他支付，或本支付
        已关联了不同ID时，抛出 DuplicateProviderRefException。
        """
        payment = await self.get(payment_id)
        if payment.provider_ref == provider_ref:
            return payment
        if payment.provider_ref is not None:
            raise DuplicateProviderRefException(payment.provider.value, provider_ref)

        owner = await self.payment_repository.get_by_provider_ref(payment.provider, provider_ref)
        if owner is not None and owner.id != payment.id:
            raise DuplicateProviderRefException(payment.provider.value, provider_ref)

        # 唯一索引兜底并发冲突
        if not await self.payment_repository.set_provider_ref(payment.id, payment.provider, provider_ref, payload):
            current = await self.get(payment_id)
            if current.provider_ref != provider_ref:
                raise DuplicateProviderRefException(payment.provider.value, provider_ref)
            return current
        return await self.get(payment_id)

    async def transition(
        self,
        payment_id: str,
        from_status: PaymentStatus,
        to_status: PaymentStatus,
        payload: Optional[dict[str, Any]] = None,
    ) -> LedgerTransition:
        """
        原子状态迁移（compare-and-set）

        - 非法边：IllegalTransitionException
        - 条件未命中且当前状态已是目标状态：幂等空操作（applied=False）
        - 条件未命中且状态冲突：StaleTransitionException
        """
        from_status = PaymentStatus(from_status)
        to_status = PaymentStatus(to_status)
        ensure_payment_transition(payment_id, from_status, to_status)

        confirmed_at = datetime.now(timezone.utc) if to_status == PaymentStatus.COMPLETED else None
        hit = await self.payment_repository.compare_and_set_status(
            payment_id,
            from_status,
            to_status,
            payload=payload,
            confirmed_at=confirmed_at,
        )
        current = await self.get(payment_id)
        if hit:
            return LedgerTransition(payment=current, applied=True, previous_status=from_status)
        if current.status == to_status:
            return LedgerTransition(payment=current, applied=False, previous_status=to_status)
        raise StaleTransitionException(payment_id, from_status.value, current.status.value)

    async def record_payload(self, payment_id: str, payload: dict[str, Any]) -> None:
        await self.payment_repository.save_payload(payment_id, payload)

    async def record_refunded_amount(self, payment_id: str, amount: int, payload: Optional[dict[str, Any]] = None) -> Payment:
        """
        累加网关已受理的按金额退款，支付状态保持 completed

        部分退款和退完余额的最后一笔都在这里计数；支付只在网关确认全额退款后
        才转为 refunded。支付非 completed 或累计金额超过支付金额时抛出
        RefundNotAllowedException。
        """
        if amount <= 0:
            raise DomainValidationException(f"退款金额必须为正整数: {amount}", field="amount")
        hit = await self.payment_repository.add_refunded_amount(payment_id, amount, payload)
        current = await self.get(payment_id)
        if not hit:
            raise RefundNotAllowedException(current.provider.value, "refund exceeds refundable balance")
        return current
