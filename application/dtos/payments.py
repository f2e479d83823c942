"""
Payment DTOs (Pydantic v2) used at application boundaries.

Provider webhook and capture documents are parsed into the tagged union
``ProviderEvent`` (``CardWalletEvent | MobileMoneyEvent``) before anything
else looks at them; the raw document only travels along as ``payload``.
"""
from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from domain.order.entity import Order, OrderStatus, OrderStatusChange
from domain.payment.entity import Payment, PaymentProvider, PaymentStatus

# Common ISO-4217 currencies (extend as needed)
ISO_4217 = {
    "COP", "USD", "EUR", "GBP", "MXN", "BRL", "CLP", "PEN", "JPY", "KRW", "CAD", "AUD",
}

_PHONE_RE = re.compile(r"^\+?\d{7,15}$")


def _validate_currency(v: str) -> str:
    u = (v or "").upper()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    if u not in ISO_4217:
        raise ValueError("unsupported currency")
    return u


# ---- Orders ----


class CreateOrder(BaseModel):
    amount: int = Field(gt=0, description="Amount in minor units")
    currency: str = Field(default="COP")

    @field_validator("currency")
    @classmethod
    def _upper_and_validate_currency(cls, v: str) -> str:
        return _validate_currency(v)


class PaymentDTO(BaseModel):
    id: str
    order_id: str
    provider: PaymentProvider
    provider_ref: Optional[str] = None
    status: PaymentStatus
    amount: int
    currency: str
    attempt: int
    refunded_amount: int = 0
    confirmed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, payment: Payment) -> "PaymentDTO":
        # last_provider_payload stays internal
        return cls(
            id=payment.id,
            order_id=payment.order_id,
            provider=payment.provider,
            provider_ref=payment.provider_ref,
            status=payment.status,
            amount=payment.amount,
            currency=payment.currency,
            attempt=payment.attempt,
            refunded_amount=payment.refunded_amount,
            confirmed_at=payment.confirmed_at,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
        )


class OrderStatusChangeDTO(BaseModel):
    from_status: Optional[OrderStatus] = None
    to_status: OrderStatus
    payment_id: Optional[str] = None
    reason: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, change: OrderStatusChange) -> "OrderStatusChangeDTO":
        return cls(
            from_status=change.from_status,
            to_status=change.to_status,
            payment_id=change.payment_id,
            reason=change.reason,
            created_at=change.created_at,
        )


class OrderDTO(BaseModel):
    id: str
    amount: int
    currency: str
    status: OrderStatus
    payment_ref: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    payments: list[PaymentDTO] = Field(default_factory=list)
    history: list[OrderStatusChangeDTO] = Field(default_factory=list)

    @classmethod
    def from_entity(
        cls,
        order: Order,
        payments: Optional[list[Payment]] = None,
        history: Optional[list[OrderStatusChange]] = None,
    ) -> "OrderDTO":
        return cls(
            id=order.id,
            amount=order.amount,
            currency=order.currency,
            status=order.status,
            payment_ref=order.payment_ref,
            cancel_reason=order.cancel_reason,
            created_at=order.created_at,
            updated_at=order.updated_at,
            paid_at=order.paid_at,
            refunded_at=order.refunded_at,
            payments=[PaymentDTO.from_entity(p) for p in payments or []],
            history=[OrderStatusChangeDTO.from_entity(h) for h in history or []],
        )


# ---- Checkout ----


class CreatePayment(BaseModel):
    provider: PaymentProvider
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    payer_phone: Optional[str] = None

    @field_validator("payer_phone")
    @classmethod
    def _normalize_phone(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        compact = re.sub(r"[\s\-()]", "", v)
        if not _PHONE_RE.match(compact):
            raise ValueError("payer_phone must contain 7-15 digits")
        return compact

    @model_validator(mode="after")
    def _check_provider_requirements(self) -> "CreatePayment":
        if self.provider == PaymentProvider.MOBILE_MONEY and not self.payer_phone:
            raise ValueError("payer_phone is required for mobile_money")
        if self.provider == PaymentProvider.CARD_WALLET and not (self.return_url and self.cancel_url):
            raise ValueError("return_url and cancel_url are required for card_wallet")
        return self


class CheckoutResult(BaseModel):
    order_id: str
    payment_id: str
    provider: PaymentProvider
    provider_ref: str
    redirect_target: Optional[str] = None
    # Base64 QR image for mobile money payers who scan instead of approving a push
    qr_image: Optional[str] = None
    resumed: bool = False


class RefundRequest(BaseModel):
    # Minor units; omitted means the whole refundable balance
    amount: Optional[int] = Field(default=None, gt=0)


# ---- Provider boundary ----


class AccessToken(BaseModel):
    value: str
    expires_at: datetime

    model_config = ConfigDict(frozen=True)

    def expires_within(self, margin_seconds: float, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.expires_at - now <= timedelta(seconds=margin_seconds)


class ProviderPaymentRequest(BaseModel):
    provider_ref: str
    redirect_target: Optional[str] = None
    qr_image: Optional[str] = None
    provider_status: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)


class ProviderRefundResult(BaseModel):
    refund_ref: str
    provider_status: str
    payload: dict[str, Any] = Field(default_factory=dict)


class _ProviderEventBase(BaseModel):
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    provider_ref: str = Field(min_length=1)
    provider_status: Optional[str] = None
    # Minor units of the refund this event reports, if the provider includes it
    refund_amount: Optional[int] = None
    # Diagnostic blob only; never read for control flow
    payload: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class CardWalletEvent(_ProviderEventBase):
    provider: Literal["card_wallet"] = "card_wallet"


class MobileMoneyEvent(_ProviderEventBase):
    provider: Literal["mobile_money"] = "mobile_money"


ProviderEvent = Annotated[Union[CardWalletEvent, MobileMoneyEvent], Field(discriminator="provider")]
provider_event_adapter: TypeAdapter[Any] = TypeAdapter(ProviderEvent)


# ---- Reconciliation ----


class OutcomeSource(str, Enum):
    SYNCHRONOUS_CAPTURE = "synchronous_capture"
    WEBHOOK = "webhook"
    STATUS_POLL = "status_poll"
    REFUND_CONFIRMATION = "refund_confirmation"


class ReconciliationStage(str, Enum):
    AWAITING_PROVIDER = "awaiting_provider"
    VERIFYING = "verifying"
    APPLYING = "applying"
    DONE = "done"


class ReconciliationOutcome(str, Enum):
    APPLIED = "applied"
    REJECTED = "rejected"
    IGNORED = "ignored"


class ReconciliationResult(BaseModel):
    outcome: ReconciliationOutcome
    reason: Optional[str] = None
    stage: ReconciliationStage = ReconciliationStage.DONE
    source: OutcomeSource
    provider: PaymentProvider
    provider_ref: Optional[str] = None
    payment_id: Optional[str] = None
    order_id: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None
    order_status: Optional[OrderStatus] = None


class RefundOutcome(BaseModel):
    order_id: str
    payment_id: str
    refund_ref: str
    provider_status: str
    confirmed: bool
    amount: Optional[int] = None
    partial: bool = False
    reconciliation: Optional[ReconciliationResult] = None


class SweepReport(BaseModel):
    checked: int = 0
    applied: int = 0
    unresolved: int = 0
    errors: int = 0
