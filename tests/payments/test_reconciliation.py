import asyncio

import pytest

from application.dtos.payments import (
    CreateOrder,
    OutcomeSource,
    ProviderPaymentRequest,
    ProviderRefundResult,
    ReconciliationOutcome,
    ReconciliationStage,
)
from application.services.reconciliation_service import idempotency_key
from domain.common.exceptions import (
    ActivePaymentExistsException,
    DomainValidationException,
    IllegalTransitionException,
    ProviderRejectedException,
    ProviderUnavailableException,
    UnknownProviderRefException,
)
from domain.order.entity import OrderStatus
from domain.payment.entity import PaymentProvider, PaymentStatus
from domain.payment.service import PaymentLedger

from tests.conftest import SIGNED, RecordingDispatcher, webhook_body

CARD = PaymentProvider.CARD_WALLET
MOBILE = PaymentProvider.MOBILE_MONEY


async def _checkout(order_service, reconciliation, provider=CARD, amount=10000):
    order = await order_service.create_order(CreateOrder(amount=amount, currency="USD"))
    checkout = await reconciliation.create_payment(
        order.id,
        provider,
        return_url="https://shop/return",
        cancel_url="https://shop/cancel",
        payer_phone="3001234567",
    )
    return order, checkout


async def _webhook(reconciliation, ref, status, provider=CARD, event_id="evt_1", amount=None):
    return await reconciliation.apply_outcome(
        OutcomeSource.WEBHOOK, provider, webhook_body(ref, status, event_id, amount), SIGNED
    )


# ---- checkout ----


@pytest.mark.asyncio
async def test_create_payment_attaches_provider_ref(order_service, reconciliation, card_gateway):
    order, checkout = await _checkout(order_service, reconciliation)

    assert checkout.provider_ref == "card_wallet-ref-1"
    assert checkout.redirect_target == "https://pay.example/approve"
    assert checkout.resumed is False
    (call,) = card_gateway.calls
    assert call[1]["idempotency_key"] == idempotency_key("create", order.id, 1)
    assert call[1]["amount"] == 10000

    view = await order_service.get_order(order.id)
    assert view.status == OrderStatus.PENDING
    assert view.payments[0].provider_ref == "card_wallet-ref-1"
    assert view.payments[0].status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_create_timeout_keeps_attempt_resumable(order_service, reconciliation, card_gateway):
    order = await order_service.create_order(CreateOrder(amount=500, currency="USD"))
    card_gateway.create_results = [ProviderUnavailableException("card_wallet", outcome_unknown=True)] * 3

    with pytest.raises(ProviderUnavailableException) as exc:
        await reconciliation.create_payment(order.id, CARD)
    assert exc.value.outcome_unknown is True

    view = await order_service.get_order(order.id)
    assert view.status == OrderStatus.PENDING
    assert [p.status for p in view.payments] == [PaymentStatus.PENDING]
    assert view.payments[0].provider_ref is None

    checkout = await reconciliation.create_payment(order.id, CARD)
    assert checkout.resumed is True
    keys = {c[1]["idempotency_key"] for c in card_gateway.calls}
    assert keys == {idempotency_key("create", order.id, 1)}
    assert len(card_gateway.calls) == 4


@pytest.mark.asyncio
async def test_resume_is_refused_for_other_provider(order_service, reconciliation, card_gateway):
    order = await order_service.create_order(CreateOrder(amount=500, currency="USD"))
    card_gateway.create_results = [ProviderUnavailableException("card_wallet", outcome_unknown=True)] * 3
    with pytest.raises(ProviderUnavailableException):
        await reconciliation.create_payment(order.id, CARD)

    with pytest.raises(ActivePaymentExistsException):
        await reconciliation.create_payment(order.id, MOBILE, payer_phone="3001234567")


@pytest.mark.asyncio
async def test_definite_create_failure_fails_attempt(order_service, reconciliation, card_gateway):
    order = await order_service.create_order(CreateOrder(amount=500, currency="USD"))
    card_gateway.create_results = [ProviderUnavailableException("card_wallet", outcome_unknown=False)] * 3

    with pytest.raises(ProviderUnavailableException):
        await reconciliation.create_payment(order.id, CARD)

    view = await order_service.get_order(order.id)
    assert view.status == OrderStatus.PENDING
    assert [p.status for p in view.payments] == [PaymentStatus.FAILED]

    checkout = await reconciliation.create_payment(order.id, CARD)
    assert checkout.resumed is False
    assert card_gateway.calls[-1][1]["idempotency_key"] == idempotency_key("create", order.id, 2)


@pytest.mark.asyncio
async def test_rejected_create_fails_attempt_without_retry(order_service, reconciliation, mobile_gateway):
    order = await order_service.create_order(CreateOrder(amount=500, currency="USD"))
    mobile_gateway.create_results = [ProviderRejectedException("mobile_money", "INVALID_PHONE", status_code=400)]

    with pytest.raises(ProviderRejectedException):
        await reconciliation.create_payment(order.id, MOBILE, payer_phone="3001234567")

    assert len(mobile_gateway.calls) == 1
    view = await order_service.get_order(order.id)
    assert [p.status for p in view.payments] == [PaymentStatus.FAILED]


@pytest.mark.asyncio
async def test_checkout_passes_through_qr_image(order_service, reconciliation, mobile_gateway):
    mobile_gateway.create_results = [
        ProviderPaymentRequest(provider_ref="MM-7", provider_status="PENDING", qr_image="iVBORw0KGgo=")
    ]

    _, checkout = await _checkout(order_service, reconciliation, provider=MOBILE)

    assert checkout.provider_ref == "MM-7"
    assert checkout.redirect_target is None
    assert checkout.qr_image == "iVBORw0KGgo="


@pytest.mark.asyncio
async def test_create_payment_requires_pending_order(order_service, reconciliation):
    order, checkout = await _checkout(order_service, reconciliation)
    await _webhook(reconciliation, checkout.provider_ref, "COMPLETED")

    with pytest.raises(IllegalTransitionException):
        await reconciliation.create_payment(order.id, CARD)


# ---- webhooks ----


@pytest.mark.asyncio
async def test_completed_webhook_marks_order_paid(order_service, reconciliation, dispatcher):
    order, checkout = await _checkout(order_service, reconciliation)

    result = await _webhook(reconciliation, checkout.provider_ref, "COMPLETED")

    assert result.outcome == ReconciliationOutcome.APPLIED
    assert result.stage == ReconciliationStage.DONE
    assert result.payment_status == PaymentStatus.COMPLETED
    assert result.order_status == OrderStatus.PAID
    view = await order_service.get_order(order.id)
    assert view.status == OrderStatus.PAID
    assert view.payment_ref == checkout.payment_id
    assert view.payments[0].confirmed_at is not None
    assert dispatcher.notifications == [(order.id, "paid", checkout.payment_id)]


@pytest.mark.asyncio
async def test_duplicate_webhook_is_ignored(order_service, reconciliation, dispatcher):
    order, checkout = await _checkout(order_service, reconciliation)
    await _webhook(reconciliation, checkout.provider_ref, "COMPLETED")

    again = await _webhook(reconciliation, checkout.provider_ref, "COMPLETED", event_id="evt_2")

    assert again.outcome == ReconciliationOutcome.IGNORED
    assert again.reason == "duplicate"
    assert again.order_status == OrderStatus.PAID
    assert len(dispatcher.notifications) == 1
    view = await order_service.get_order(order.id)
    assert [h.to_status for h in view.history] == [OrderStatus.PENDING, OrderStatus.PAID]


@pytest.mark.asyncio
async def test_bad_signature_changes_nothing(order_service, reconciliation):
    order, checkout = await _checkout(order_service, reconciliation)

    result = await reconciliation.apply_outcome(
        OutcomeSource.WEBHOOK, CARD, webhook_body(checkout.provider_ref, "COMPLETED"), {"X-Test-Signature": "forged"}
    )

    assert result.outcome == ReconciliationOutcome.REJECTED
    assert result.reason == "bad_signature"
    assert result.stage == ReconciliationStage.VERIFYING
    assert (await order_service.get_order(order.id)).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_malformed_and_unknown_deliveries(order_service, reconciliation):
    await _checkout(order_service, reconciliation)

    malformed = await reconciliation.apply_outcome(OutcomeSource.WEBHOOK, CARD, b"{not json", SIGNED)
    assert malformed.outcome == ReconciliationOutcome.REJECTED
    assert malformed.reason == "malformed_payload"

    unknown = await _webhook(reconciliation, "never-issued", "COMPLETED")
    assert unknown.outcome == ReconciliationOutcome.REJECTED
    assert unknown.reason == "unknown_provider_ref"

    wrong_provider = await _webhook(reconciliation, "card_wallet-ref-1", "COMPLETED", provider=MOBILE)
    assert wrong_provider.reason == "unknown_provider_ref"


@pytest.mark.asyncio
async def test_unmapped_status_is_ignored(order_service, reconciliation):
    order, checkout = await _checkout(order_service, reconciliation)

    result = await _webhook(reconciliation, checkout.provider_ref, "APPROVED")

    assert result.outcome == ReconciliationOutcome.IGNORED
    assert result.reason == "unmapped_status"
    assert (await order_service.get_order(order.id)).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_unknown_ref_is_rejected_before_status_mapping(order_service, reconciliation):
    await _checkout(order_service, reconciliation)

    result = await _webhook(reconciliation, "never-issued", "APPROVED")

    assert result.outcome == ReconciliationOutcome.REJECTED
    assert result.reason == "unknown_provider_ref"
    assert result.stage == ReconciliationStage.APPLYING


@pytest.mark.asyncio
async def test_failed_webhook_cancels_order(order_service, reconciliation, dispatcher):
    order, checkout = await _checkout(order_service, reconciliation, provider=MOBILE)

    result = await _webhook(reconciliation, checkout.provider_ref, "REJECTED", provider=MOBILE)

    assert result.outcome == ReconciliationOutcome.APPLIED
    assert result.payment_status == PaymentStatus.FAILED
    view = await order_service.get_order(order.id)
    assert view.status == OrderStatus.CANCELLED
    assert view.cancel_reason == "payment_failed"
    assert dispatcher.notifications == [(order.id, "cancelled", checkout.payment_id)]


@pytest.mark.asyncio
async def test_failure_after_completion_is_refused(order_service, reconciliation):
    order, checkout = await _checkout(order_service, reconciliation)
    await _webhook(reconciliation, checkout.provider_ref, "COMPLETED")

    late = await _webhook(reconciliation, checkout.provider_ref, "DENIED", event_id="evt_late")

    assert late.outcome == ReconciliationOutcome.REJECTED
    assert late.reason == "illegal_transition"
    view = await order_service.get_order(order.id)
    assert view.status == OrderStatus.PAID
    assert view.payments[0].status == PaymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_completion_on_cancelled_order_is_a_conflict(order_service, reconciliation, uow_factory):
    order, checkout = await _checkout(order_service, reconciliation)
    await _webhook(reconciliation, checkout.provider_ref, "DENIED")

    # A second attempt that reached the provider before the order was cancelled
    async with uow_factory() as uow:
        ledger = PaymentLedger(uow.payment_repository)
        stray = await ledger.open(order.id, CARD, order.amount, order.currency)
        await ledger.attach_provider_ref(stray.id, "stray-ref")

    result = await _webhook(reconciliation, "stray-ref", "COMPLETED", event_id="evt_stray")

    assert result.outcome == ReconciliationOutcome.REJECTED
    assert result.reason == "order_conflict"
    assert result.payment_status == PaymentStatus.COMPLETED
    view = await order_service.get_order(order.id)
    assert view.status == OrderStatus.CANCELLED
    assert {p.id: p.status for p in view.payments}[stray.id] == PaymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_dispatch_failure_does_not_undo_settlement(order_service, uow_factory, card_gateway, mobile_gateway):
    from application.services.reconciliation_service import ReconciliationService
    from core.settings import PaymentSettings
    from tests.conftest import FakeRegistry

    service = ReconciliationService(
        uow_factory,
        FakeRegistry(card_gateway, mobile_gateway),
        settings=PaymentSettings(),
        dispatcher=RecordingDispatcher(fail=True),
    )
    order, checkout = await _checkout(order_service, service)

    result = await _webhook(service, checkout.provider_ref, "COMPLETED")

    assert result.outcome == ReconciliationOutcome.APPLIED
    assert (await order_service.get_order(order.id)).status == OrderStatus.PAID


# ---- capture / polling ----


@pytest.mark.asyncio
async def test_capture_and_webhook_converge(order_service, reconciliation, card_gateway, dispatcher):
    order, checkout = await _checkout(order_service, reconciliation)

    captured = await reconciliation.capture_payment(CARD, checkout.provider_ref)
    assert captured.outcome == ReconciliationOutcome.APPLIED
    assert captured.source == OutcomeSource.SYNCHRONOUS_CAPTURE
    assert card_gateway.calls[-1][1]["idempotency_key"] == idempotency_key("capture", order.id, 1)

    late_webhook = await _webhook(reconciliation, checkout.provider_ref, "COMPLETED")
    assert late_webhook.outcome == ReconciliationOutcome.IGNORED

    again = await reconciliation.capture_payment(CARD, checkout.provider_ref)
    assert again.outcome == ReconciliationOutcome.IGNORED
    assert again.reason == "already_settled"
    assert [c[0] for c in card_gateway.calls].count("capture") == 1
    assert len(dispatcher.notifications) == 1


@pytest.mark.asyncio
async def test_concurrent_capture_and_webhook_settle_once(order_service, reconciliation, dispatcher):
    order, checkout = await _checkout(order_service, reconciliation)

    results = await asyncio.gather(
        reconciliation.capture_payment(CARD, checkout.provider_ref),
        _webhook(reconciliation, checkout.provider_ref, "COMPLETED"),
    )

    assert sorted(r.outcome.value for r in results) == ["applied", "ignored"]
    assert len(dispatcher.notifications) == 1
    assert (await order_service.get_order(order.id)).status == OrderStatus.PAID


@pytest.mark.asyncio
async def test_capture_timeout_leaves_payment_pending(order_service, reconciliation, card_gateway, dispatcher):
    order, checkout = await _checkout(order_service, reconciliation)
    card_gateway.capture_results = [ProviderUnavailableException("card_wallet", outcome_unknown=True)] * 3

    with pytest.raises(ProviderUnavailableException):
        await reconciliation.capture_payment(CARD, checkout.provider_ref)

    view = await order_service.get_order(order.id)
    assert view.status == OrderStatus.PENDING
    assert view.payments[0].status == PaymentStatus.PENDING
    assert dispatcher.polls == [("card_wallet", checkout.provider_ref, 30)]

    card_gateway.status_results = ["COMPLETED"]
    polled = await reconciliation.sync_status(CARD, checkout.provider_ref)
    assert polled.outcome == ReconciliationOutcome.APPLIED
    assert polled.source == OutcomeSource.STATUS_POLL
    assert (await order_service.get_order(order.id)).status == OrderStatus.PAID


@pytest.mark.asyncio
async def test_capture_unknown_reference(reconciliation):
    with pytest.raises(UnknownProviderRefException):
        await reconciliation.capture_payment(CARD, "nope")


@pytest.mark.asyncio
async def test_pending_sweep(order_service, reconciliation, card_gateway, mobile_gateway):
    paid_order, paid = await _checkout(order_service, reconciliation)
    waiting_order, waiting = await _checkout(order_service, reconciliation, provider=MOBILE)
    down_order, down = await _checkout(order_service, reconciliation)

    card_gateway.status_results = ["COMPLETED", ProviderUnavailableException("card_wallet")] + [
        ProviderUnavailableException("card_wallet")
    ] * 2
    mobile_gateway.status_results = ["PENDING"]

    report = await reconciliation.reconcile_pending(older_than_seconds=0)

    assert report.checked == 3
    assert report.applied == 1
    assert report.unresolved == 1
    assert report.errors == 1
    assert (await order_service.get_order(paid_order.id)).status == OrderStatus.PAID
    assert (await order_service.get_order(waiting_order.id)).status == OrderStatus.PENDING
    assert (await order_service.get_order(down_order.id)).status == OrderStatus.PENDING


# ---- refunds ----


@pytest.mark.asyncio
async def test_confirmed_refund_settles_order(order_service, reconciliation, card_gateway, dispatcher):
    order, checkout = await _checkout(order_service, reconciliation)
    await _webhook(reconciliation, checkout.provider_ref, "COMPLETED")

    outcome = await reconciliation.refund_order(order.id)

    assert outcome.confirmed is True
    assert outcome.reconciliation.outcome == ReconciliationOutcome.APPLIED
    assert card_gateway.calls[-1][1]["idempotency_key"] == idempotency_key("refund", order.id, 1)
    view = await order_service.get_order(order.id)
    assert view.status == OrderStatus.REFUNDED
    assert view.payments[0].status == PaymentStatus.REFUNDED
    assert [n[1] for n in dispatcher.notifications] == ["paid", "refunded"]


@pytest.mark.asyncio
async def test_pending_refund_waits_for_webhook(order_service, reconciliation, mobile_gateway):
    order, checkout = await _checkout(order_service, reconciliation, provider=MOBILE)
    await _webhook(reconciliation, checkout.provider_ref, "SUCCESS", provider=MOBILE)
    mobile_gateway.refund_results = [ProviderRefundResult(refund_ref="rf_9", provider_status="PENDING")]

    outcome = await reconciliation.refund_order(order.id)

    assert outcome.confirmed is False
    assert outcome.reconciliation is None
    assert (await order_service.get_order(order.id)).status == OrderStatus.PAID

    confirmed = await _webhook(reconciliation, checkout.provider_ref, "REFUNDED", provider=MOBILE, event_id="evt_rf")
    assert confirmed.outcome == ReconciliationOutcome.APPLIED
    assert (await order_service.get_order(order.id)).status == OrderStatus.REFUNDED


@pytest.mark.asyncio
async def test_refund_requires_paid_order(order_service, reconciliation, card_gateway):
    order, _ = await _checkout(order_service, reconciliation)

    with pytest.raises(IllegalTransitionException):
        await reconciliation.refund_order(order.id)
    assert "refund" not in [c[0] for c in card_gateway.calls]


@pytest.mark.asyncio
async def test_pending_full_refund_schedules_status_poll(order_service, reconciliation, mobile_gateway, dispatcher):
    order, checkout = await _checkout(order_service, reconciliation, provider=MOBILE)
    await _webhook(reconciliation, checkout.provider_ref, "SUCCESS", provider=MOBILE)
    mobile_gateway.refund_results = [ProviderRefundResult(refund_ref="rf_9", provider_status="PENDING")]

    await reconciliation.refund_order(order.id)

    assert dispatcher.polls == [("mobile_money", checkout.provider_ref, 30)]


@pytest.mark.asyncio
async def test_partial_refund_keeps_order_paid(order_service, reconciliation, card_gateway, dispatcher):
    order, checkout = await _checkout(order_service, reconciliation)
    await _webhook(reconciliation, checkout.provider_ref, "COMPLETED")

    outcome = await reconciliation.refund_order(order.id, amount=3000)

    assert outcome.partial is True
    assert outcome.amount == 3000
    assert outcome.reconciliation is None
    refund_call = card_gateway.calls[-1][1]
    assert refund_call["amount"] == 3000
    assert refund_call["idempotency_key"] == idempotency_key("refund:0:3000", order.id, 1)
    view = await order_service.get_order(order.id)
    assert view.status == OrderStatus.PAID
    assert view.payments[0].status == PaymentStatus.COMPLETED
    assert view.payments[0].refunded_amount == 3000
    assert [n[1] for n in dispatcher.notifications] == ["paid"]
    assert dispatcher.polls == []


@pytest.mark.asyncio
async def test_partial_refund_amount_is_bounded_by_refundable_balance(order_service, reconciliation, card_gateway):
    order, checkout = await _checkout(order_service, reconciliation)
    await _webhook(reconciliation, checkout.provider_ref, "COMPLETED")
    await reconciliation.refund_order(order.id, amount=6000)

    for amount in (0, -5, 4001):
        with pytest.raises(DomainValidationException) as exc:
            await reconciliation.refund_order(order.id, amount=amount)
        assert exc.value.details["refundable_amount"] == 4000
    assert [c[0] for c in card_gateway.calls].count("refund") == 1


@pytest.mark.asyncio
async def test_refunding_the_remaining_balance_settles_order(order_service, reconciliation, card_gateway, dispatcher):
    order, checkout = await _checkout(order_service, reconciliation)
    await _webhook(reconciliation, checkout.provider_ref, "COMPLETED")
    await reconciliation.refund_order(order.id, amount=6000)

    outcome = await reconciliation.refund_order(order.id, amount=4000)

    assert outcome.partial is False
    assert outcome.reconciliation.outcome == ReconciliationOutcome.APPLIED
    assert card_gateway.calls[-1][1]["idempotency_key"] == idempotency_key("refund:6000:4000", order.id, 1)
    view = await order_service.get_order(order.id)
    assert view.status == OrderStatus.REFUNDED
    assert view.payments[0].status == PaymentStatus.REFUNDED
    assert view.payments[0].refunded_amount == 10000
    assert [n[1] for n in dispatcher.notifications] == ["paid", "refunded"]


@pytest.mark.asyncio
async def test_partial_refund_webhook_is_noted_not_applied(order_service, reconciliation):
    order, checkout = await _checkout(order_service, reconciliation)
    await _webhook(reconciliation, checkout.provider_ref, "COMPLETED")
    await reconciliation.refund_order(order.id, amount=3000)

    notice = await _webhook(reconciliation, checkout.provider_ref, "REFUNDED", event_id="evt_rf1", amount=3000)

    assert notice.outcome == ReconciliationOutcome.IGNORED
    assert notice.reason == "partial_refund"
    view = await order_service.get_order(order.id)
    assert view.status == OrderStatus.PAID
    assert view.payments[0].status == PaymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_pending_final_refund_is_settled_by_its_webhook(order_service, reconciliation, mobile_gateway):
    order, checkout = await _checkout(order_service, reconciliation, provider=MOBILE)
    await _webhook(reconciliation, checkout.provider_ref, "SUCCESS", provider=MOBILE)
    mobile_gateway.refund_results = [
        ProviderRefundResult(refund_ref="rf_1", provider_status="REFUNDED"),
        ProviderRefundResult(refund_ref="rf_2", provider_status="PENDING"),
    ]
    await reconciliation.refund_order(order.id, amount=6000)
    pending = await reconciliation.refund_order(order.id, amount=4000)
    assert pending.confirmed is False
    assert (await order_service.get_order(order.id)).status == OrderStatus.PAID

    settled = await _webhook(
        reconciliation, checkout.provider_ref, "REFUNDED", provider=MOBILE, event_id="evt_rf2", amount=4000
    )

    assert settled.outcome == ReconciliationOutcome.APPLIED
    assert (await order_service.get_order(order.id)).status == OrderStatus.REFUNDED


@pytest.mark.asyncio
async def test_full_refund_webhook_with_amount_settles_order(order_service, reconciliation):
    order, checkout = await _checkout(order_service, reconciliation)
    await _webhook(reconciliation, checkout.provider_ref, "COMPLETED")

    result = await _webhook(reconciliation, checkout.provider_ref, "REFUNDED", event_id="evt_rf", amount=10000)

    assert result.outcome == ReconciliationOutcome.APPLIED
    assert (await order_service.get_order(order.id)).status == OrderStatus.REFUNDED


# ---- concurrency ----


@pytest.mark.asyncio
async def test_concurrent_checkouts_open_one_payment(order_service, reconciliation):
    order = await order_service.create_order(CreateOrder(amount=700, currency="USD"))

    results = await asyncio.gather(
        reconciliation.create_payment(order.id, CARD),
        reconciliation.create_payment(order.id, MOBILE, payer_phone="3001234567"),
        return_exceptions=True,
    )

    succeeded = [r for r in results if not isinstance(r, Exception)]
    refused = [r for r in results if isinstance(r, ActivePaymentExistsException)]
    assert len(succeeded) == 1
    assert len(refused) == 1
    view = await order_service.get_order(order.id)
    assert len(view.payments) == 1
