"""
Order domain events.

Dataclass events record order settlement facts for downstream handling
(customer notifications). Domain remains free of infrastructure imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import ClassVar, Optional
import uuid


@dataclass
class OrderEvent:
    order_id: str
    payment_id: Optional[str] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    outcome: ClassVar[str] = ""


@dataclass
class OrderPaid(OrderEvent):
    outcome: ClassVar[str] = "paid"


@dataclass
class OrderCancelled(OrderEvent):
    reason: Optional[str] = None

    outcome: ClassVar[str] = "cancelled"


@dataclass
class OrderRefunded(OrderEvent):
    outcome: ClassVar[str] = "refunded"
