"""
Background task port used by the reconciliation flow.

Both calls are fire-and-forget handoffs; implementations enqueue and return.
"""
from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable


@runtime_checkable
class PaymentTaskDispatcher(Protocol):
    def notify_order_outcome(self, order_id: str, outcome: str, payment_id: Optional[str] = None) -> None: ...

    def schedule_status_poll(self, provider: str, provider_ref: str, *, countdown: int = 0) -> None: ...
