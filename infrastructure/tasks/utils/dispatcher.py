"""Celery-backed implementation of the payment task dispatcher port."""
from __future__ import annotations

from typing import Optional

from ..config.celery import celery_app


class TaskDispatcher:
    """Internal facade used by the application layer to schedule tasks."""

    def notify_order_outcome(self, order_id: str, outcome: str, payment_id: Optional[str] = None) -> None:
        """Fire-and-forget notification for a settled order."""
        celery_app.send_task(
            "payments.notify_order_outcome",
            kwargs={"order_id": order_id, "outcome": outcome, "payment_id": payment_id},
        )

    def schedule_status_poll(self, provider: str, provider_ref: str, *, countdown: int = 0) -> None:
        celery_app.send_task(
            "payments.poll_payment_status",
            kwargs={"provider": provider, "provider_ref": provider_ref},
            countdown=countdown,
        )
