"""Celery application configuration"""
from __future__ import annotations

from celery import Celery
from kombu import Queue

from core.config import settings
from core.logging_config import get_logger
from .beat import CELERY_BEAT_SCHEDULE


# Packages scanned for payment tasks
CELERY_IMPORTS = (
    "infrastructure.tasks.tasks",
)


celery_app = Celery("checkout_reconciliation")

celery_app.conf.update(
    broker_url=settings.redis.url,
    result_backend=settings.redis.result_backend or settings.redis.url,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # Late ack: a task lost with its worker is redelivered
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    result_expires=3600,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_default_retry_delay=5,
    task_queues=(
        Queue("high"),
        Queue("default"),
        Queue("low"),
    ),
    task_routes={
        "payments.poll_payment_status": {"queue": "high"},
        "payments.notify_order_outcome": {"queue": "default"},
        "payments.sweep_pending_payments": {"queue": "low"},
    },
    beat_schedule=CELERY_BEAT_SCHEDULE,
    task_always_eager=settings.CELERY_TASK_ALWAYS_EAGER,
)

celery_app.conf.imports = CELERY_IMPORTS

celery_app.autodiscover_tasks(packages=CELERY_IMPORTS)


logger = get_logger(__name__)


@celery_app.on_after_configure.connect
def _log_configuration(sender, **kwargs):
    logger.info(
        "celery_configured",
        broker_configured=bool(sender.conf.broker_url),
        always_eager=sender.conf.task_always_eager,
    )
