"""Utility helpers for Celery tasks."""
from .dispatcher import TaskDispatcher
from .base_task import BaseTask

__all__ = ["TaskDispatcher", "BaseTask"]
