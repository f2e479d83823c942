"""Celery beat schedule configuration.

The pending-payment sweep runs on the configured reconciliation interval.
"""
from __future__ import annotations

from core.settings import payment_settings

CELERY_BEAT_SCHEDULE = {
    "payments-sweep-pending": {
        "task": "payments.sweep_pending_payments",
        "schedule": float(payment_settings.reconciliation.sweep_interval_seconds),
    },
}
