"""Payment reconciliation Celery tasks.

Each invocation builds its own gateway registry and runs under a fresh event
loop; the engine pool is disposed afterwards because pooled connections are
bound to the loop that opened them.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

from celery import shared_task

from application.services.reconciliation_service import ReconciliationService
from core.config import settings
from core.logging_config import get_logger
from core.settings import payment_settings
from domain.common.exceptions import ProviderUnavailableException, StoreUnavailableException
from infrastructure.database import engine
from infrastructure.external.payments import build_payment_gateways
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork
from ..utils.base_task import BaseTask
from ..utils.dispatcher import TaskDispatcher

logger = get_logger(__name__)

T = TypeVar("T")


def _run_with_service(fn: Callable[[ReconciliationService], Awaitable[T]]) -> T:
    async def _run() -> T:
        gateways = build_payment_gateways(payment_settings)
        try:
            service = ReconciliationService(
                SQLAlchemyUnitOfWork,
                gateways,
                settings=payment_settings,
                dispatcher=TaskDispatcher(),
                callback_base_url=settings.webhook_base_url,
            )
            return await fn(service)
        finally:
            await gateways.aclose()
            await engine.dispose()

    return asyncio.run(_run())


@shared_task(name="payments.notify_order_outcome", bind=True, base=BaseTask)
def notify_order_outcome(self, order_id: str, outcome: str, payment_id: Optional[str] = None) -> None:
    """Hand a settled order outcome to downstream consumers.

    Replace the body with the real notification channel (email/ESP, CRM).
    """
    logger.info("order_outcome_notified", order_id=order_id, outcome=outcome, payment_id=payment_id)


@shared_task(
    name="payments.poll_payment_status",
    bind=True,
    base=BaseTask,
    autoretry_for=(ProviderUnavailableException, StoreUnavailableException),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    retry_kwargs={"max_retries": 5},
)
def poll_payment_status(self, provider: str, provider_ref: str) -> dict[str, Any]:
    """Ask the provider for the current status and reconcile it."""
    result = _run_with_service(lambda service: service.sync_status(provider, provider_ref))
    logger.info(
        "payment_status_polled",
        provider=provider,
        provider_ref=provider_ref,
        outcome=result.outcome.value,
        reason=result.reason,
    )
    return result.model_dump(mode="json")


@shared_task(name="payments.sweep_pending_payments", bind=True, base=BaseTask)
def sweep_pending_payments(self, older_than_seconds: Optional[int] = None, limit: Optional[int] = None) -> dict[str, Any]:
    """Periodic sweep resolving payments stuck in pending."""
    report = _run_with_service(lambda service: service.reconcile_pending(older_than_seconds, limit))
    return report.model_dump()


__all__ = [
    "notify_order_outcome",
    "poll_payment_status",
    "sweep_pending_payments",
]
