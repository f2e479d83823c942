"""
Factory and registry for payment gateway clients.

The registry is owned by whoever builds it (the API lifespan or a single task
invocation) and must be closed with ``aclose()``.
"""
from __future__ import annotations

from typing import Iterator, Mapping, Optional, Union

import httpx

from application.ports.payment_gateway import PaymentGateway
from core.settings import PaymentSettings
from domain.payment.entity import PaymentProvider
from infrastructure.external.payments.token_cache import Clock


class PaymentGatewayRegistry:
    def __init__(self, gateways: Mapping[PaymentProvider, PaymentGateway]) -> None:
        self._gateways = dict(gateways)

    def get(self, provider: Union[PaymentProvider, str]) -> PaymentGateway:
        try:
            return self._gateways[PaymentProvider(provider)]
        except (KeyError, ValueError):
            raise ValueError(f"Unsupported payment provider: {provider}") from None

    def __contains__(self, provider: object) -> bool:
        try:
            return PaymentProvider(provider) in self._gateways
        except ValueError:
            return False

    def __iter__(self) -> Iterator[PaymentGateway]:
        return iter(self._gateways.values())

    async def aclose(self) -> None:
        for gateway in self._gateways.values():
            await gateway.aclose()


def build_payment_gateways(
    settings: PaymentSettings,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Optional[Clock] = None,
) -> PaymentGatewayRegistry:
    from .card_wallet_client import CardWalletClient
    from .mobile_money_client import MobileMoneyClient

    common = dict(
        timeouts=settings.timeouts,
        token_refresh_margin_seconds=settings.token_refresh_margin_seconds,
        webhook_tolerance_seconds=settings.webhook.tolerance_seconds,
        transport=transport,
        clock=clock,
    )
    return PaymentGatewayRegistry(
        {
            PaymentProvider.CARD_WALLET: CardWalletClient(settings.card_wallet, **common),
            PaymentProvider.MOBILE_MONEY: MobileMoneyClient(settings.mobile_money, **common),
        }
    )


__all__ = ["PaymentGatewayRegistry", "build_payment_gateways"]
