import asyncio

import pytest

from application.dtos.payments import (
    OutcomeSource,
    ReconciliationOutcome,
    ReconciliationResult,
    ReconciliationStage,
    SweepReport,
)
from domain.payment.entity import PaymentProvider
from infrastructure.tasks import TaskDispatcher, celery_app
from infrastructure.tasks.config.beat import CELERY_BEAT_SCHEDULE
from infrastructure.tasks.tasks import payments as payment_tasks
from infrastructure.tasks.utils.base_task import task_context


@pytest.fixture
def sent(monkeypatch):
    calls = []

    def fake_send_task(name, args=None, kwargs=None, **options):
        calls.append((name, kwargs, options))

    monkeypatch.setattr(celery_app, "send_task", fake_send_task)
    return calls


def test_dispatcher_sends_named_tasks(sent):
    dispatcher = TaskDispatcher()
    dispatcher.notify_order_outcome("ord_1", "paid", "pay_1")
    dispatcher.schedule_status_poll("card_wallet", "O-1", countdown=30)

    assert sent == [
        ("payments.notify_order_outcome", {"order_id": "ord_1", "outcome": "paid", "payment_id": "pay_1"}, {}),
        ("payments.poll_payment_status", {"provider": "card_wallet", "provider_ref": "O-1"}, {"countdown": 30}),
    ]


def test_routes_and_beat_schedule():
    routes = celery_app.conf.task_routes
    assert routes["payments.poll_payment_status"]["queue"] == "high"
    assert routes["payments.sweep_pending_payments"]["queue"] == "low"
    assert CELERY_BEAT_SCHEDULE["payments-sweep-pending"]["task"] == "payments.sweep_pending_payments"


def test_notify_task_runs_locally():
    result = payment_tasks.notify_order_outcome.apply(kwargs={"order_id": "ord_1", "outcome": "paid"})
    assert result.successful()


def test_poll_task_returns_reconciliation_result(monkeypatch):
    seen = {}

    def fake_run(fn):
        class _Service:
            async def sync_status(self, provider, provider_ref):
                seen["args"] = (provider, provider_ref)
                return ReconciliationResult(
                    outcome=ReconciliationOutcome.APPLIED,
                    stage=ReconciliationStage.DONE,
                    source=OutcomeSource.STATUS_POLL,
                    provider=PaymentProvider(provider),
                    provider_ref=provider_ref,
                )

        return asyncio.run(fn(_Service()))

    monkeypatch.setattr(payment_tasks, "_run_with_service", fake_run)

    result = payment_tasks.poll_payment_status.apply(kwargs={"provider": "mobile_money", "provider_ref": "MM-1"})

    assert result.successful()
    assert result.result["outcome"] == "applied"
    assert seen["args"] == ("mobile_money", "MM-1")


def test_sweep_task_returns_report(monkeypatch):
    def fake_run(fn):
        class _Service:
            async def reconcile_pending(self, older_than_seconds, limit):
                return SweepReport(checked=2, applied=1, unresolved=1)

        return asyncio.run(fn(_Service()))

    monkeypatch.setattr(payment_tasks, "_run_with_service", fake_run)

    result = payment_tasks.sweep_pending_payments.apply()
    assert result.result == {"checked": 2, "applied": 1, "unresolved": 1, "errors": 0}


def test_task_context_only_keeps_identifiers():
    ctx = task_context({"order_id": "ord_1", "payer_phone": "300", "provider_ref": None, "outcome": "paid"})
    assert ctx == {"order_id": "ord_1", "outcome": "paid"}
    assert task_context(None) == {}
