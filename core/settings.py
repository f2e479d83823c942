"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Every key lives under the ``PAYMENT__`` prefix, e.g.
``PAYMENT__CARD_WALLET__CLIENT_ID`` or ``PAYMENT__RETRY__MAX_ATTEMPTS``.
"""
from __future__ import annotations

from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, field_validator


class PaymentTimeouts(BaseModel):
    connect: float = 2.0
    read: float = 10.0
    write: float = 5.0
    pool: float = 2.0


class PaymentRetry(BaseModel):
    # Total attempts per provider call, first try included
    max_attempts: int = Field(default=3, ge=1)
    base_backoff: float = Field(default=0.2, ge=0)
    max_backoff: float = Field(default=5.0, ge=0)


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post webhooks


class ReconciliationSettings(BaseModel):
    stale_after_seconds: int = 900
    sweep_interval_seconds: int = 300
    sweep_batch_size: int = 100
    status_poll_delay_seconds: int = 30
    stale_transition_retries: int = 3


class CardWalletSettings(BaseModel):
    environment: Literal["sandbox", "live"] = "sandbox"
    sandbox_base_url: str = "https://api-m.sandbox.paypal.com"
    live_base_url: str = "https://api-m.paypal.com"
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    webhook_id: Optional[str] = None
    brand_name: Optional[str] = None
    transmission_id_header: str = "PAYPAL-TRANSMISSION-ID"
    transmission_time_header: str = "PAYPAL-TRANSMISSION-TIME"
    transmission_sig_header: str = "PAYPAL-TRANSMISSION-SIG"
    cert_url_header: str = "PAYPAL-CERT-URL"
    auth_algo_header: str = "PAYPAL-AUTH-ALGO"
    # Hosts the webhook signing certificate may be downloaded from (https only)
    cert_hosts: list[str] = Field(
        default_factory=lambda: [
            "api.paypal.com",
            "api-m.paypal.com",
            "api.sandbox.paypal.com",
            "api-m.sandbox.paypal.com",
        ]
    )

    @property
    def base_url(self) -> str:
        return self.live_base_url if self.environment == "live" else self.sandbox_base_url


class MobileMoneySettings(BaseModel):
    environment: Literal["sandbox", "live"] = "sandbox"
    sandbox_base_url: str = "https://sandbox.api.nequi.com"
    live_base_url: str = "https://api.nequi.com"
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    webhook_secret: Optional[str] = None
    signature_header: str = "X-Nequi-Signature"
    timestamp_header: str = "X-Nequi-Timestamp"

    @property
    def base_url(self) -> str:
        return self.live_base_url if self.environment == "live" else self.sandbox_base_url


class PaymentSettings(BaseSettings):
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    reconciliation: ReconciliationSettings = Field(default_factory=ReconciliationSettings)

    # Refresh cached provider tokens when less than this remains before expiry
    token_refresh_margin_seconds: int = 1800

    card_wallet: CardWalletSettings = Field(default_factory=CardWalletSettings)
    mobile_money: MobileMoneySettings = Field(default_factory=MobileMoneySettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    @field_validator("token_refresh_margin_seconds")
    @classmethod
    def _non_negative_margin(cls, v: int) -> int:
        if v < 0:
            raise ValueError("token_refresh_margin_seconds must be >= 0")
        return v


payment_settings = PaymentSettings()
