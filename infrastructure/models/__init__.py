"""Infrastructure models package exports."""
from .base import Base, metadata
from .order import OrderModel, OrderStatusHistoryModel
from .payment import PaymentModel

__all__ = [
    "Base",
    "metadata",
    "OrderModel",
    "OrderStatusHistoryModel",
    "PaymentModel",
]
