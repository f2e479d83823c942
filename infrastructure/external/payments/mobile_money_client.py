"""
Mobile money adapter (push payment requests, Nequi style).

The payer approves a push notification on their phone; there is no capture
step. ``paymentId`` returned on creation is the ``provider_ref``.
"""
from __future__ import annotations

import json
from typing import Any, Mapping, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from application.dtos.payments import MobileMoneyEvent, ProviderPaymentRequest, ProviderRefundResult
from core.settings import MobileMoneySettings, PaymentTimeouts
from domain.common.exceptions import (
    MalformedProviderPayloadException,
    ProviderRejectedException,
    RefundNotAllowedException,
)
from domain.payment.entity import PaymentProvider
from infrastructure.external.payments.base import BasePaymentClient, format_amount, parse_amount
from infrastructure.external.payments.signatures import TimestampedHmacScheme
from infrastructure.external.payments.token_cache import Clock


class _PaymentDocument(BaseModel):
    payment_id: str = Field(alias="paymentId", min_length=1)
    status: Optional[str] = None
    redirect_url: Optional[str] = Field(default=None, alias="redirectUrl")
    qr_image: Optional[str] = Field(default=None, alias="qrImageBase64")

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class _WebhookDocument(BaseModel):
    event_id: Optional[str] = Field(default=None, alias="eventId")
    event_type: str = Field(alias="eventType", min_length=1)
    payment_id: str = Field(alias="paymentId", min_length=1)
    status: str = Field(min_length=1)
    reference: Optional[str] = None
    amount: Optional[dict[str, Any]] = None

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class MobileMoneyClient(BasePaymentClient):
    provider = PaymentProvider.MOBILE_MONEY
    idempotency_header = "Idempotency-Key"
    token_path = "/oauth2/token"

    def __init__(
        self,
        settings: MobileMoneySettings,
        *,
        timeouts: PaymentTimeouts,
        token_refresh_margin_seconds: float,
        webhook_tolerance_seconds: int,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings
        super().__init__(
            base_url=settings.base_url,
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            timeouts=timeouts,
            token_refresh_margin_seconds=token_refresh_margin_seconds,
            signature_scheme=TimestampedHmacScheme(
                secret=settings.webhook_secret,
                signature_header=settings.signature_header,
                timestamp_header=settings.timestamp_header,
                tolerance_seconds=webhook_tolerance_seconds,
                clock=clock,
            ),
            transport=transport,
            clock=clock,
        )

    async def create_payment_request(
        self,
        amount: int,
        currency: str,
        order_ref: str,
        callback_url: Optional[str],
        *,
        idempotency_key: str,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        payer_phone: Optional[str] = None,
        description: Optional[str] = None,
    ) -> ProviderPaymentRequest:
        if not payer_phone:
            raise ProviderRejectedException(self.provider.value, "payer phone is required")
        request: dict[str, Any] = {
            "amount": {"value": format_amount(amount, currency), "currency": currency.upper()},
            "phone": payer_phone,
            "reference": order_ref,
            "description": description or f"Order {order_ref}",
        }
        if callback_url:
            request["callbackUrl"] = callback_url

        body = await self._request(
            "POST",
            "/v1/payments/requests",
            op="create_payment_request",
            json=request,
            idempotency_key=idempotency_key,
        )
        document = self._payment_document(body, "create response")
        self._log("payment_request_created", provider_ref=document.payment_id, provider_status=document.status)
        return ProviderPaymentRequest(
            provider_ref=document.payment_id,
            redirect_target=document.redirect_url,
            qr_image=document.qr_image,
            provider_status=document.status,
            payload=body,
        )

    async def capture(self, provider_ref: str, *, idempotency_key: str) -> dict[str, Any]:
        raise ProviderRejectedException(self.provider.value, "capture is not supported")

    async def get_status(self, provider_ref: str) -> MobileMoneyEvent:
        body = await self._request("GET", f"/v1/payments/requests/{provider_ref}", op="get_status")
        return self.parse_capture_response(body)

    def parse_capture_response(self, payload: Mapping[str, Any]) -> MobileMoneyEvent:
        document = self._payment_document(payload, "payment document")
        return MobileMoneyEvent(
            event_type="PAYMENT_STATUS",
            provider_ref=document.payment_id,
            provider_status=document.status,
            payload=dict(payload),
        )

    async def refund(
        self,
        provider_ref: str,
        *,
        amount: Optional[int] = None,
        currency: str,
        idempotency_key: str,
    ) -> ProviderRefundResult:
        body: dict[str, Any] = {}
        if amount is not None:
            body["amount"] = {"value": format_amount(amount, currency), "currency": currency.upper()}
        try:
            result = await self._request(
                "POST",
                f"/v1/payments/requests/{provider_ref}/refund",
                op="refund",
                json=body,
                idempotency_key=idempotency_key,
            )
        except ProviderRejectedException as exc:
            if exc.status_code in (409, 422):
                raise RefundNotAllowedException(self.provider.value, exc.reason) from exc
            raise

        refund_ref = result.get("refundId") or result.get("id")
        status = str(result.get("status") or "").upper()
        if not refund_ref or not status:
            raise MalformedProviderPayloadException(self.provider.value, "refund response")
        provider_status = "REFUNDED" if status in ("COMPLETED", "SUCCESS") else status
        self._log("refund_requested", provider_ref=provider_ref, refund_ref=refund_ref, provider_status=provider_status)
        return ProviderRefundResult(refund_ref=str(refund_ref), provider_status=provider_status, payload=result)

    def parse_webhook(self, raw_body: bytes) -> MobileMoneyEvent:
        try:
            raw = json.loads(raw_body)
            document = _WebhookDocument.model_validate(raw)
        except (ValueError, ValidationError) as exc:
            raise self._malformed("webhook body", exc) from exc
        refund_amount = None
        if document.status.upper() == "REFUNDED" and document.amount:
            try:
                refund_amount = parse_amount(str(document.amount["value"]), str(document.amount["currency"]))
            except (KeyError, ValueError) as exc:
                raise self._malformed("webhook refund amount", exc) from exc
        return MobileMoneyEvent(
            event_id=document.event_id,
            event_type=document.event_type,
            provider_ref=document.payment_id,
            provider_status=document.status,
            refund_amount=refund_amount,
            payload=raw,
        )

    def _payment_document(self, payload: Mapping[str, Any], what: str) -> _PaymentDocument:
        try:
            return _PaymentDocument.model_validate(payload)
        except ValidationError as exc:
            raise self._malformed(what, exc) from exc
