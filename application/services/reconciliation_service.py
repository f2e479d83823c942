"""
Reconciliation application service - drives payment attempts against providers
and folds every provider outcome into the ledger and the order state machine.

Provider calls always run outside database transactions. Each outcome source
(synchronous capture, webhook, status poll, refund confirmation) goes through
``apply_outcome`` so that all of them converge on the same final state no
matter how often or in which order they arrive.
"""
from __future__ import annotations

import asyncio
import hashlib
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from application.dtos.payments import (
    CardWalletEvent,
    CheckoutResult,
    MobileMoneyEvent,
    OutcomeSource,
    ReconciliationOutcome,
    ReconciliationResult,
    ReconciliationStage,
    RefundOutcome,
    SweepReport,
    provider_event_adapter,
)
from application.ports.payment_gateway import PaymentGateway, PaymentGatewayResolver
from application.ports.task_dispatcher import PaymentTaskDispatcher
from application.utils.retry import call_with_retry
from core.logging_config import get_logger
from core.settings import PaymentSettings
from domain.common.exceptions import (
    ActivePaymentExistsException,
    AlreadySettledException,
    DomainValidationException,
    IllegalTransitionException,
    MalformedProviderPayloadException,
    ProviderRejectedException,
    ProviderUnavailableException,
    RefundNotAllowedException,
    StaleTransitionException,
    StoreUnavailableException,
    UnknownProviderRefException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import Order, OrderStatus
from domain.order.events import OrderEvent
from domain.order.service import OrderStateMachine
from domain.payment.entity import Payment, PaymentProvider, PaymentStatus
from domain.payment.service import PaymentLedger
from shared.codes.payment_codes import map_provider_status


logger = get_logger(__name__)

ProviderEvent = Union[CardWalletEvent, MobileMoneyEvent]
RawOutcome = Union[bytes, Mapping[str, Any], CardWalletEvent, MobileMoneyEvent]

# Order reason recorded when a provider reports the payment failed
PAYMENT_FAILED_REASON = "payment_failed"


def idempotency_key(op: str, order_id: str, attempt: int) -> str:
    """Stable provider idempotency key for one operation of one attempt."""
    return hashlib.sha256(f"{op}|{order_id}|{attempt}".encode("utf-8")).hexdigest()


class ReconciliationService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateways: PaymentGatewayResolver,
        *,
        settings: PaymentSettings,
        dispatcher: Optional[PaymentTaskDispatcher] = None,
        callback_base_url: Optional[str] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateways = gateways
        self._settings = settings
        self._dispatcher = dispatcher
        self._callback_base_url = callback_base_url.rstrip("/") if callback_base_url else None

    # ---- checkout ----

    async def create_payment(
        self,
        order_id: str,
        provider: PaymentProvider,
        *,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        payer_phone: Optional[str] = None,
    ) -> CheckoutResult:
        """Open a payment attempt for a pending order and register it with the provider.

        A pending attempt of the same provider that never received a provider
        reference (its creation outcome was unknown) is resumed with the same
        idempotency key instead of opening a new one.
        """
        provider = PaymentProvider(provider)
        gateway = self._gateways.get(provider)
        resumed = False
        try:
            payment = await self._open_attempt(order_id, provider)
        except ActivePaymentExistsException:
            payment = await self._find_resumable(order_id, provider)
            if payment is None:
                raise
            resumed = True
            logger.info("payment_attempt_resumed", order_id=order_id, payment_id=payment.id, attempt=payment.attempt)

        key = idempotency_key("create", payment.order_id, payment.attempt)
        try:
            request = await call_with_retry(
                lambda: gateway.create_payment_request(
                    payment.amount,
                    payment.currency,
                    payment.order_id,
                    self._callback_url(provider),
                    idempotency_key=key,
                    return_url=return_url,
                    cancel_url=cancel_url,
                    payer_phone=payer_phone,
                ),
                policy=self._settings.retry,
                op="create_payment_request",
                provider=provider.value,
            )
        except ProviderUnavailableException as exc:
            if exc.outcome_unknown:
                # Provider may hold the payment; keep the attempt resumable
                logger.warning(
                    "payment_creation_outcome_unknown",
                    order_id=payment.order_id,
                    payment_id=payment.id,
                    provider=provider.value,
                )
            else:
                await self._fail_attempt(payment, {"error": "provider_unavailable"})
            raise
        except ProviderRejectedException as exc:
            await self._fail_attempt(
                payment, {"error": "provider_rejected", "reason": exc.reason, "status_code": exc.status_code}
            )
            raise

        async with self._uow_factory() as uow:
            ledger = PaymentLedger(uow.payment_repository)
            payment = await ledger.attach_provider_ref(payment.id, request.provider_ref, request.payload)

        logger.info(
            "payment_request_attached",
            order_id=payment.order_id,
            payment_id=payment.id,
            provider=provider.value,
            provider_ref=request.provider_ref,
            resumed=resumed,
        )
        return CheckoutResult(
            order_id=payment.order_id,
            payment_id=payment.id,
            provider=provider,
            provider_ref=request.provider_ref,
            redirect_target=request.redirect_target,
            qr_image=request.qr_image,
            resumed=resumed,
        )

    async def _open_attempt(self, order_id: str, provider: PaymentProvider) -> Payment:
        async with self._uow_factory() as uow:
            machine = OrderStateMachine(uow.order_repository, uow.payment_repository)
            order = await machine.get(order_id)
            if order.status != OrderStatus.PENDING:
                raise IllegalTransitionException("order", order_id, order.status.value, OrderStatus.PAID.value)
            ledger = PaymentLedger(uow.payment_repository)
            return await ledger.open(order.id, provider, order.amount, order.currency)

    async def _find_resumable(self, order_id: str, provider: PaymentProvider) -> Optional[Payment]:
        async with self._uow_factory(readonly=True) as uow:
            active = await PaymentLedger(uow.payment_repository).get_active(order_id)
        if active is not None and active.provider_ref is None and active.provider == provider:
            return active
        return None

    async def _fail_attempt(self, payment: Payment, payload: dict[str, Any]) -> None:
        try:
            async with self._uow_factory() as uow:
                ledger = PaymentLedger(uow.payment_repository)
                await ledger.transition(payment.id, PaymentStatus.PENDING, PaymentStatus.FAILED, payload)
        except StaleTransitionException as exc:
            logger.warning("payment_attempt_fail_skipped", payment_id=payment.id, actual=exc.actual)
            return
        logger.info("payment_attempt_failed", order_id=payment.order_id, payment_id=payment.id)

    def _callback_url(self, provider: PaymentProvider) -> Optional[str]:
        if not self._callback_base_url:
            return None
        return f"{self._callback_base_url}/{provider.value}"

    # ---- outcomes ----

    async def apply_outcome(
        self,
        source: OutcomeSource,
        provider: PaymentProvider,
        raw: RawOutcome,
        headers: Optional[Mapping[str, str]] = None,
    ) -> ReconciliationResult:
        """Fold one provider outcome into the ledger and the order.

        Transient store failures propagate as ``StoreUnavailableException`` so
        that webhook deliveries are retried by the provider.
        """
        source = OutcomeSource(source)
        provider = PaymentProvider(provider)
        gateway = self._gateways.get(provider)

        def result(outcome: ReconciliationOutcome, stage: ReconciliationStage, **kwargs) -> ReconciliationResult:
            return ReconciliationResult(outcome=outcome, stage=stage, source=source, provider=provider, **kwargs)

        if source == OutcomeSource.WEBHOOK:
            body = bytes(raw) if isinstance(raw, (bytes, bytearray)) else None
            if body is None or not await gateway.verify_webhook_signature(body, headers or {}):
                logger.warning("provider_event_rejected", provider=provider.value, reason="bad_signature")
                return result(ReconciliationOutcome.REJECTED, ReconciliationStage.VERIFYING, reason="bad_signature")

        try:
            event = self._parse(gateway, provider, raw)
        except MalformedProviderPayloadException as exc:
            logger.warning(
                "provider_event_rejected",
                provider=provider.value,
                source=source.value,
                reason="malformed_payload",
                detail=exc.reason,
            )
            return result(ReconciliationOutcome.REJECTED, ReconciliationStage.VERIFYING, reason="malformed_payload")

        retries = self._settings.reconciliation.stale_transition_retries
        for attempt in range(retries + 1):
            try:
                async with self._uow_factory() as uow:
                    applied, events = await self._apply_in_uow(uow, event, result)
            except StaleTransitionException as exc:
                logger.info(
                    "reconciliation_stale_retry",
                    provider_ref=event.provider_ref,
                    attempt=attempt + 1,
                    expected=exc.expected,
                    actual=exc.actual,
                )
                continue
            break
        else:
            logger.critical(
                "reconciliation_stale_exhausted",
                provider=provider.value,
                provider_ref=event.provider_ref,
                provider_status=event.provider_status,
            )
            return result(
                ReconciliationOutcome.REJECTED,
                ReconciliationStage.APPLYING,
                reason="stale_transition",
                provider_ref=event.provider_ref,
            )

        await self._publish(events)
        logger.info(
            "provider_event_reconciled",
            source=source.value,
            provider=provider.value,
            provider_ref=event.provider_ref,
            event_id=event.event_id,
            outcome=applied.outcome.value,
            reason=applied.reason,
            payment_status=applied.payment_status.value if applied.payment_status else None,
            order_status=applied.order_status.value if applied.order_status else None,
        )
        return applied

    def _parse(self, gateway: PaymentGateway, provider: PaymentProvider, raw: RawOutcome) -> ProviderEvent:
        if isinstance(raw, (CardWalletEvent, MobileMoneyEvent)):
            event = raw
        elif isinstance(raw, (bytes, bytearray)):
            event = gateway.parse_webhook(bytes(raw))
        else:
            event = gateway.parse_capture_response(raw)
        if event.provider != provider.value:
            raise MalformedProviderPayloadException(provider.value, f"event for provider {event.provider}")
        return event

    async def _apply_in_uow(
        self,
        uow: AbstractUnitOfWork,
        event: ProviderEvent,
        result: Callable[..., ReconciliationResult],
    ) -> tuple[ReconciliationResult, list[OrderEvent]]:
        ledger = PaymentLedger(uow.payment_repository)
        machine = OrderStateMachine(uow.order_repository, uow.payment_repository)
        provider = PaymentProvider(event.provider)

        payment = await ledger.get_by_provider_ref(provider, event.provider_ref)
        if payment is None:
            logger.warning("provider_event_unknown_ref", provider=provider.value, provider_ref=event.provider_ref)
            return (
                result(
                    ReconciliationOutcome.REJECTED,
                    ReconciliationStage.APPLYING,
                    reason="unknown_provider_ref",
                    provider_ref=event.provider_ref,
                ),
                [],
            )

        context = dict(provider_ref=event.provider_ref, payment_id=payment.id, order_id=payment.order_id)
        mapped = map_provider_status(provider.value, event.provider_status)
        if mapped is None:
            logger.info(
                "provider_status_unmapped",
                provider=provider.value,
                provider_status=event.provider_status,
                event_type=event.event_type,
                **context,
            )
            return (
                result(
                    ReconciliationOutcome.IGNORED,
                    ReconciliationStage.APPLYING,
                    reason="unmapped_status",
                    payment_status=payment.status,
                    **context,
                ),
                [],
            )
        target = PaymentStatus(mapped)
        if (
            target == PaymentStatus.REFUNDED
            and payment.status == PaymentStatus.COMPLETED
            and event.refund_amount is not None
            and event.refund_amount < payment.amount
            and payment.refundable_amount > 0
        ):
            # Partial refund notice while part of the amount is still unrefunded
            await ledger.record_payload(payment.id, event.payload)
            logger.info("provider_partial_refund_noted", refund_amount=event.refund_amount, **context)
            return (
                result(
                    ReconciliationOutcome.IGNORED,
                    ReconciliationStage.APPLYING,
                    reason="partial_refund",
                    payment_status=payment.status,
                    **context,
                ),
                [],
            )

        if payment.status == target:
            order = await machine.get(payment.order_id)
            return (
                result(
                    ReconciliationOutcome.IGNORED,
                    ReconciliationStage.APPLYING,
                    reason="duplicate",
                    payment_status=payment.status,
                    order_status=order.status,
                    **context,
                ),
                [],
            )

        try:
            transition = await ledger.transition(payment.id, payment.status, target, event.payload)
        except IllegalTransitionException:
            logger.critical(
                "payment_transition_illegal",
                payment_id=payment.id,
                order_id=payment.order_id,
                provider=provider.value,
                current=payment.status.value,
                target=target.value,
            )
            return (
                result(
                    ReconciliationOutcome.REJECTED,
                    ReconciliationStage.APPLYING,
                    reason="illegal_transition",
                    payment_status=payment.status,
                    **context,
                ),
                [],
            )
        if not transition.applied:
            order = await machine.get(payment.order_id)
            return (
                result(
                    ReconciliationOutcome.IGNORED,
                    ReconciliationStage.APPLYING,
                    reason="duplicate",
                    payment_status=transition.payment.status,
                    order_status=order.status,
                    **context,
                ),
                [],
            )

        order, conflict = await self._apply_order_effect(machine, payment, target)
        if conflict is not None:
            return (
                result(
                    ReconciliationOutcome.REJECTED,
                    ReconciliationStage.APPLYING,
                    reason=conflict,
                    payment_status=target,
                    order_status=order.status,
                    **context,
                ),
                machine.clear_events(),
            )
        return (
            result(
                ReconciliationOutcome.APPLIED,
                ReconciliationStage.DONE,
                payment_status=target,
                order_status=order.status,
                **context,
            ),
            machine.clear_events(),
        )

    async def _apply_order_effect(
        self,
        machine: OrderStateMachine,
        payment: Payment,
        target: PaymentStatus,
    ) -> tuple[Order, Optional[str]]:
        try:
            if target == PaymentStatus.COMPLETED:
                return await machine.mark_paid(payment.order_id, payment.id), None
            if target == PaymentStatus.FAILED:
                return await machine.cancel(payment.order_id, PAYMENT_FAILED_REASON, payment_id=payment.id), None
            return await machine.complete_refund(payment.order_id, payment.id), None
        except (AlreadySettledException, IllegalTransitionException) as exc:
            # Ledger change still commits; needs manual reconciliation
            logger.critical(
                "order_settlement_conflict",
                order_id=payment.order_id,
                payment_id=payment.id,
                payment_status=target.value,
                error=exc.message,
            )
            return await machine.get(payment.order_id), "order_conflict"

    async def _publish(self, events: Iterable[OrderEvent]) -> None:
        if self._dispatcher is None:
            return
        for event in events:
            try:
                await asyncio.to_thread(
                    self._dispatcher.notify_order_outcome, event.order_id, event.outcome, event.payment_id
                )
            except Exception as exc:
                logger.error(
                    "order_outcome_dispatch_failed",
                    order_id=event.order_id,
                    outcome=event.outcome,
                    error=str(exc),
                )

    # ---- capture / polling ----

    async def capture_payment(self, provider: PaymentProvider, provider_ref: str) -> ReconciliationResult:
        provider = PaymentProvider(provider)
        async with self._uow_factory(readonly=True) as uow:
            payment = await PaymentLedger(uow.payment_repository).get_by_provider_ref(provider, provider_ref)
        if payment is None:
            raise UnknownProviderRefException(provider.value, provider_ref)
        if payment.status != PaymentStatus.PENDING:
            return ReconciliationResult(
                outcome=ReconciliationOutcome.IGNORED,
                reason="already_settled",
                stage=ReconciliationStage.AWAITING_PROVIDER,
                source=OutcomeSource.SYNCHRONOUS_CAPTURE,
                provider=provider,
                provider_ref=provider_ref,
                payment_id=payment.id,
                order_id=payment.order_id,
                payment_status=payment.status,
            )

        gateway = self._gateways.get(provider)
        key = idempotency_key("capture", payment.order_id, payment.attempt)
        try:
            raw = await call_with_retry(
                lambda: gateway.capture(provider_ref, idempotency_key=key),
                policy=self._settings.retry,
                op="capture",
                provider=provider.value,
            )
        except ProviderUnavailableException as exc:
            # Leave the payment pending; a later poll or webhook settles it
            logger.warning(
                "payment_capture_unresolved",
                payment_id=payment.id,
                provider_ref=provider_ref,
                outcome_unknown=exc.outcome_unknown,
            )
            await self._schedule_poll(provider, provider_ref)
            raise
        return await self.apply_outcome(OutcomeSource.SYNCHRONOUS_CAPTURE, provider, raw)

    async def sync_status(self, provider: PaymentProvider, provider_ref: str) -> ReconciliationResult:
        provider = PaymentProvider(provider)
        gateway = self._gateways.get(provider)
        event = await call_with_retry(
            lambda: gateway.get_status(provider_ref),
            policy=self._settings.retry,
            op="get_status",
            provider=provider.value,
        )
        return await self.apply_outcome(OutcomeSource.STATUS_POLL, provider, event)

    async def reconcile_pending(
        self,
        older_than_seconds: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> SweepReport:
        """Poll every pending payment that has not moved for a while."""
        cfg = self._settings.reconciliation
        age = cfg.stale_after_seconds if older_than_seconds is None else older_than_seconds
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=age)
        async with self._uow_factory(readonly=True) as uow:
            payments = await PaymentLedger(uow.payment_repository).list_stale_pending(
                cutoff, limit or cfg.sweep_batch_size
            )

        report = SweepReport()
        for payment in payments:
            if not payment.provider_ref:
                continue
            report.checked += 1
            try:
                outcome = await self.sync_status(payment.provider, payment.provider_ref)
            except (
                ProviderUnavailableException,
                ProviderRejectedException,
                MalformedProviderPayloadException,
                StoreUnavailableException,
            ) as exc:
                report.errors += 1
                logger.warning(
                    "pending_sweep_item_failed",
                    payment_id=payment.id,
                    provider=payment.provider.value,
                    error=type(exc).__name__,
                )
                continue
            if outcome.outcome == ReconciliationOutcome.APPLIED:
                report.applied += 1
            else:
                report.unresolved += 1

        logger.info("pending_sweep_finished", **report.model_dump())
        return report

    async def _schedule_poll(self, provider: PaymentProvider, provider_ref: str) -> None:
        if self._dispatcher is None:
            return
        try:
            await asyncio.to_thread(
                self._dispatcher.schedule_status_poll,
                provider.value,
                provider_ref,
                countdown=self._settings.reconciliation.status_poll_delay_seconds,
            )
        except Exception as exc:
            logger.error("status_poll_schedule_failed", provider_ref=provider_ref, error=str(exc))

    # ---- refunds ----

    async def refund_order(self, order_id: str, amount: Optional[int] = None) -> RefundOutcome:
        """Refund the payment that settled a paid order.

        ``amount`` (minor units) below the refundable balance is a partial
        refund: it is recorded on the payment, which stays ``completed`` while
        the order stays ``paid``. Omitting it, or refunding exactly the rest of
        the balance, is a full refund. The order only becomes ``refunded`` once
        the provider confirms; a pending full refund is settled later by the
        provider's refund webhook or a status poll.
        """
        async with self._uow_factory(readonly=True) as uow:
            machine = OrderStateMachine(uow.order_repository, uow.payment_repository)
            payment = await machine.refund(order_id)
        if not payment.provider_ref:
            raise RefundNotAllowedException(payment.provider.value, "payment has no provider reference")
        if amount is not None and not 0 < amount <= payment.refundable_amount:
            raise DomainValidationException(
                f"refund amount must be between 1 and {payment.refundable_amount}",
                field="amount",
                details={"refundable_amount": payment.refundable_amount},
            )

        provider = payment.provider
        provider_ref = payment.provider_ref
        partial = amount is not None and amount < payment.refundable_amount
        gateway = self._gateways.get(provider)
        op = "refund" if amount is None else f"refund:{payment.refunded_amount}:{amount}"
        key = idempotency_key(op, payment.order_id, payment.attempt)
        refund = await call_with_retry(
            lambda: gateway.refund(provider_ref, amount=amount, currency=payment.currency, idempotency_key=key),
            policy=self._settings.retry,
            op="refund",
            provider=provider.value,
        )

        confirmed = map_provider_status(provider.value, refund.provider_status) == PaymentStatus.REFUNDED.value
        reconciliation: Optional[ReconciliationResult] = None
        if amount is not None:
            # Counted on acceptance, confirmed or not
            async with self._uow_factory() as uow:
                await PaymentLedger(uow.payment_repository).record_refunded_amount(payment.id, amount, refund.payload)
            logger.info(
                "refund_amount_accepted",
                order_id=order_id,
                payment_id=payment.id,
                refund_ref=refund.refund_ref,
                amount=amount,
                partial=partial,
                provider_status=refund.provider_status,
            )
        if confirmed and not partial:
            event = provider_event_adapter.validate_python(
                {
                    "provider": provider.value,
                    "event_id": refund.refund_ref,
                    "event_type": "refund",
                    "provider_ref": provider_ref,
                    "provider_status": refund.provider_status,
                    "payload": refund.payload,
                }
            )
            reconciliation = await self.apply_outcome(OutcomeSource.REFUND_CONFIRMATION, provider, event)
        elif not partial:
            if amount is None:
                async with self._uow_factory() as uow:
                    await PaymentLedger(uow.payment_repository).record_payload(payment.id, refund.payload)
            logger.info(
                "refund_pending_confirmation",
                order_id=order_id,
                payment_id=payment.id,
                refund_ref=refund.refund_ref,
                provider_status=refund.provider_status,
            )
            await self._schedule_poll(provider, provider_ref)

        return RefundOutcome(
            order_id=order_id,
            payment_id=payment.id,
            refund_ref=refund.refund_ref,
            provider_status=refund.provider_status,
            confirmed=confirmed,
            amount=amount,
            partial=partial,
            reconciliation=reconciliation,
        )
