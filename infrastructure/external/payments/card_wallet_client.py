"""
Card wallet adapter (hosted checkout orders API, PayPal v2 style).

Flow: create an order with ``intent=CAPTURE``, redirect the payer to the
``approve`` link, capture once the payer returns. The provider order id is the
``provider_ref`` for the whole lifecycle; webhooks about captures and refunds
are correlated back to it through ``supplementary_data.related_ids.order_id``.
"""
from __future__ import annotations

import json
from typing import Any, Mapping, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from application.dtos.payments import CardWalletEvent, ProviderPaymentRequest, ProviderRefundResult
from core.settings import CardWalletSettings, PaymentTimeouts
from domain.common.exceptions import (
    MalformedProviderPayloadException,
    ProviderRejectedException,
    RefundNotAllowedException,
)
from domain.payment.entity import PaymentProvider
from infrastructure.external.payments.base import BasePaymentClient, format_amount, parse_amount
from infrastructure.external.payments.signatures import TransmissionRsaScheme
from infrastructure.external.payments.token_cache import Clock


# Webhook event type -> provider status; takes precedence over resource.status
WEBHOOK_EVENT_STATUS = {
    "PAYMENT.CAPTURE.COMPLETED": "COMPLETED",
    "CHECKOUT.ORDER.COMPLETED": "COMPLETED",
    "PAYMENT.CAPTURE.DENIED": "DENIED",
    "PAYMENT.CAPTURE.DECLINED": "DENIED",
    "CHECKOUT.ORDER.VOIDED": "VOIDED",
    "PAYMENT.CAPTURE.REFUNDED": "REFUNDED",
    "PAYMENT.CAPTURE.PENDING": "PENDING",
}

_APPROVAL_RELS = ("approve", "payer-action")
_REFUNDABLE_CAPTURE_STATUSES = {"COMPLETED", "PARTIALLY_REFUNDED"}


class _RelatedIds(BaseModel):
    order_id: Optional[str] = None


class _SupplementaryData(BaseModel):
    related_ids: Optional[_RelatedIds] = None


class _WebhookResource(BaseModel):
    id: str = Field(min_length=1)
    status: Optional[str] = None
    amount: Optional[dict[str, Any]] = None
    supplementary_data: Optional[_SupplementaryData] = None

    model_config = ConfigDict(extra="allow")


class _WebhookDocument(BaseModel):
    id: str = Field(min_length=1)
    event_type: str = Field(min_length=1)
    resource: _WebhookResource

    model_config = ConfigDict(extra="allow")


class _OrderDocument(BaseModel):
    id: str = Field(min_length=1)
    status: Optional[str] = None
    purchase_units: list[dict[str, Any]] = Field(default_factory=list)
    links: list[dict[str, Any]] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")

    def captures(self) -> list[dict[str, Any]]:
        found: list[dict[str, Any]] = []
        for unit in self.purchase_units:
            payments = unit.get("payments") or {}
            found.extend(c for c in payments.get("captures") or [] if isinstance(c, dict))
        return found

    def effective_status(self) -> Optional[str]:
        # The latest capture reflects money movement better than the order status
        captures = self.captures()
        if captures and captures[-1].get("status"):
            return str(captures[-1]["status"])
        return self.status

    def approval_link(self) -> Optional[str]:
        for link in self.links:
            if link.get("rel") in _APPROVAL_RELS and link.get("href"):
                return str(link["href"])
        return None


class CardWalletClient(BasePaymentClient):
    provider = PaymentProvider.CARD_WALLET
    idempotency_header = "PayPal-Request-Id"
    token_path = "/v1/oauth2/token"

    def __init__(
        self,
        settings: CardWalletSettings,
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
            signature_scheme=TransmissionRsaScheme(
                webhook_id=settings.webhook_id,
                fetch_certificate=self._fetch_certificate,
                cert_hosts=settings.cert_hosts,
                id_header=settings.transmission_id_header,
                time_header=settings.transmission_time_header,
                signature_header=settings.transmission_sig_header,
                cert_url_header=settings.cert_url_header,
                auth_algo_header=settings.auth_algo_header,
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
        """Create a checkout order awaiting payer approval.

        ``callback_url`` is not sent: card wallet webhooks are registered per
        application, not per order. ``payer_phone`` is ignored.
        """
        purchase_unit: dict[str, Any] = {
            "reference_id": order_ref,
            "custom_id": order_ref,
            "amount": {"currency_code": currency.upper(), "value": format_amount(amount, currency)},
        }
        if description:
            purchase_unit["description"] = description[:127]
        context: dict[str, Any] = {"user_action": "PAY_NOW"}
        if return_url:
            context["return_url"] = return_url
        if cancel_url:
            context["cancel_url"] = cancel_url
        if self.settings.brand_name:
            context["brand_name"] = self.settings.brand_name

        body = await self._request(
            "POST",
            "/v2/checkout/orders",
            op="create_payment_request",
            json={"intent": "CAPTURE", "purchase_units": [purchase_unit], "application_context": context},
            idempotency_key=idempotency_key,
        )
        document = self._order_document(body, "create response")
        self._log("payment_request_created", provider_ref=document.id, provider_status=document.status)
        return ProviderPaymentRequest(
            provider_ref=document.id,
            redirect_target=document.approval_link(),
            provider_status=document.status,
            payload=body,
        )

    async def capture(self, provider_ref: str, *, idempotency_key: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/v2/checkout/orders/{provider_ref}/capture",
            op="capture",
            json={},
            idempotency_key=idempotency_key,
        )

    async def get_status(self, provider_ref: str) -> CardWalletEvent:
        body = await self._request("GET", f"/v2/checkout/orders/{provider_ref}", op="get_status")
        return self.parse_capture_response(body)

    def parse_capture_response(self, payload: Mapping[str, Any]) -> CardWalletEvent:
        document = self._order_document(payload, "order document")
        try:
            return CardWalletEvent(
                event_type="CHECKOUT.ORDER",
                provider_ref=document.id,
                provider_status=document.effective_status(),
                payload=dict(payload),
            )
        except ValidationError as exc:
            raise self._malformed("order document", exc) from exc

    async def refund(
        self,
        provider_ref: str,
        *,
        amount: Optional[int] = None,
        currency: str,
        idempotency_key: str,
    ) -> ProviderRefundResult:
        order = self._order_document(
            await self._request("GET", f"/v2/checkout/orders/{provider_ref}", op="refund_lookup"),
            "order document",
        )
        capture_id = next(
            (
                str(c["id"])
                for c in reversed(order.captures())
                if c.get("id") and str(c.get("status", "")).upper() in _REFUNDABLE_CAPTURE_STATUSES
            ),
            None,
        )
        if capture_id is None:
            raise RefundNotAllowedException(self.provider.value, "no completed capture")

        body: dict[str, Any] = {}
        if amount is not None:
            body["amount"] = {"currency_code": currency.upper(), "value": format_amount(amount, currency)}
        try:
            result = await self._request(
                "POST",
                f"/v2/payments/captures/{capture_id}/refund",
                op="refund",
                json=body,
                idempotency_key=idempotency_key,
            )
        except ProviderRejectedException as exc:
            if exc.status_code == 422:
                raise RefundNotAllowedException(self.provider.value, exc.reason) from exc
            raise

        refund_ref = result.get("id")
        status = str(result.get("status") or "").upper()
        if not refund_ref or not status:
            raise MalformedProviderPayloadException(self.provider.value, "refund response")
        # A completed refund object means the payment is refunded
        provider_status = "REFUNDED" if status == "COMPLETED" else status
        self._log("refund_requested", provider_ref=provider_ref, refund_ref=refund_ref, provider_status=provider_status)
        return ProviderRefundResult(refund_ref=str(refund_ref), provider_status=provider_status, payload=result)

    def parse_webhook(self, raw_body: bytes) -> CardWalletEvent:
        try:
            raw = json.loads(raw_body)
            document = _WebhookDocument.model_validate(raw)
        except (ValueError, ValidationError) as exc:
            raise self._malformed("webhook body", exc) from exc

        resource = document.resource
        related = resource.supplementary_data.related_ids if resource.supplementary_data else None
        provider_ref = (related.order_id if related else None) or resource.id
        status = WEBHOOK_EVENT_STATUS.get(document.event_type.upper(), resource.status)
        refund_amount = None
        try:
            if status == "REFUNDED" and resource.amount:
                # The resource of a refund event is the refund itself
                refund_amount = parse_amount(str(resource.amount["value"]), str(resource.amount["currency_code"]))
            return CardWalletEvent(
                event_id=document.id,
                event_type=document.event_type,
                provider_ref=provider_ref,
                provider_status=status,
                refund_amount=refund_amount,
                payload=raw,
            )
        except (KeyError, ValueError, ValidationError) as exc:
            raise self._malformed("webhook body", exc) from exc

    async def _fetch_certificate(self, url: str) -> bytes:
        return await self._download(url, op="webhook_certificate")

    def _order_document(self, payload: Mapping[str, Any], what: str) -> _OrderDocument:
        try:
            return _OrderDocument.model_validate(payload)
        except ValidationError as exc:
            raise self._malformed(what, exc) from exc
