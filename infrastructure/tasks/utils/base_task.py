"""Common base task for Celery jobs"""
from __future__ import annotations

from celery import Task
from core.logging_config import get_logger

logger = get_logger(__name__)

# Task kwargs that identify the payment being worked on; safe to log
_CONTEXT_KEYS = ("order_id", "payment_id", "provider", "provider_ref", "outcome")


def task_context(kwargs) -> dict:
    return {k: kwargs[k] for k in _CONTEXT_KEYS if kwargs and kwargs.get(k) is not None}


class BaseTask(Task):
    """Structured lifecycle logging for payment tasks."""

    def on_failure(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        logger.error(
            "celery_task_failure",
            task_id=task_id,
            task_name=self.name,
            error=type(exc).__name__,
            **task_context(kwargs),
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_retry(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        logger.warning(
            "celery_task_retry",
            task_id=task_id,
            task_name=self.name,
            retries=self.request.retries,
            error=type(exc).__name__,
            **task_context(kwargs),
        )
        super().on_retry(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval, task_id, args, kwargs):  # type: ignore[override]
        logger.info(
            "celery_task_success",
            task_id=task_id,
            task_name=self.name,
            **task_context(kwargs),
        )
        super().on_success(retval, task_id, args, kwargs)
