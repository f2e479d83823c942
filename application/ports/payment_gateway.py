"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol, Union, runtime_checkable

from application.dtos.payments import (
    AccessToken,
    CardWalletEvent,
    MobileMoneyEvent,
    ProviderPaymentRequest,
    ProviderRefundResult,
)
from domain.payment.entity import PaymentProvider


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for third-party payment providers.

    Every mutating call takes an idempotency key. Transport failures raise
    ``ProviderUnavailableException``, explicit refusals raise
    ``ProviderRejectedException``; signature checks never raise.
    """

    provider: PaymentProvider

    async def authenticate(self) -> AccessToken: ...

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
    ) -> ProviderPaymentRequest: ...

    async def get_status(self, provider_ref: str) -> CardWalletEvent | MobileMoneyEvent: ...

    async def capture(self, provider_ref: str, *, idempotency_key: str) -> dict[str, Any]: ...

    async def refund(
        self,
        provider_ref: str,
        *,
        amount: Optional[int] = None,
        currency: str,
        idempotency_key: str,
    ) -> ProviderRefundResult: ...

    async def verify_webhook_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> bool: ...

    def parse_webhook(self, raw_body: bytes) -> CardWalletEvent | MobileMoneyEvent: ...

    def parse_capture_response(self, payload: Mapping[str, Any]) -> CardWalletEvent | MobileMoneyEvent: ...

    async def aclose(self) -> None: ...


class PaymentGatewayResolver(Protocol):
    """Looks up the gateway for a provider; raises ``ValueError`` for unknown ones."""

    def get(self, provider: Union[PaymentProvider, str]) -> PaymentGateway: ...
