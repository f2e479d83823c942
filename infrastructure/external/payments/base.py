"""
Base payment client implementing shared concerns: http, auth, error mapping,
amount formatting and logging.

Concrete providers subclass and implement provider-specific endpoints and
webhook parsing. Clients are built from injected settings; each instance owns
its HTTP pool and its cached access token.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

import httpx
from pydantic import ValidationError

from application.dtos.payments import AccessToken
from core.logging_config import get_logger
from core.settings import PaymentTimeouts
from domain.common.exceptions import (
    MalformedProviderPayloadException,
    ProviderRejectedException,
    ProviderUnavailableException,
)
from domain.payment.entity import PaymentProvider
from infrastructure.external.payments.signatures import WebhookSignatureScheme
from infrastructure.external.payments.token_cache import Clock, TokenCache, utc_now


logger = get_logger(__name__)

# Currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "CLP", "VND", "PYG", "UGX", "XAF", "XOF"})

# 5xx responses that state the request was not processed
_NOT_APPLIED_STATUS = frozenset({429, 503})


def currency_exponent(currency: str) -> int:
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def format_amount(amount_minor: int, currency: str) -> str:
    """Minor units -> provider decimal string (``12345, USD`` -> ``"123.45"``)."""
    exponent = currency_exponent(currency)
    if exponent == 0:
        return str(amount_minor)
    value = Decimal(amount_minor).scaleb(-exponent)
    return f"{value:.{exponent}f}"


def parse_amount(value: str, currency: str) -> int:
    """Provider decimal string -> minor units."""
    try:
        scaled = Decimal(value).scaleb(currency_exponent(currency))
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f"invalid amount: {value!r}") from exc
    if scaled != scaled.to_integral_value():
        raise ValueError(f"amount has more precision than {currency} allows: {value!r}")
    return int(scaled)


class BasePaymentClient:
    provider: PaymentProvider
    idempotency_header: str = "Idempotency-Key"
    token_path: str = "/oauth2/token"

    def __init__(
        self,
        *,
        base_url: str,
        client_id: Optional[str],
        client_secret: Optional[str],
        timeouts: PaymentTimeouts,
        token_refresh_margin_seconds: float,
        signature_scheme: WebhookSignatureScheme,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client_id = client_id
        self._client_secret = client_secret
        self._timeouts_cfg = timeouts
        self._transport = transport
        self._clock = clock or utc_now
        self._client: Optional[httpx.AsyncClient] = None
        self.signature_scheme = signature_scheme
        self.tokens = TokenCache(
            self._fetch_token,
            refresh_margin_seconds=token_refresh_margin_seconds,
            provider=self.provider.value,
            clock=self._clock,
        )

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg.connect,
            read=self._timeouts_cfg.read,
            write=self._timeouts_cfg.write,
            pool=self._timeouts_cfg.pool,
        )

    @asynccontextmanager
    async def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self.timeouts,
                transport=self._transport,
            )
        # Keep open for reuse; explicit aclose() will close.
        yield self._client

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    # ---- auth ----

    async def authenticate(self) -> AccessToken:
        return await self.tokens.get()

    async def _fetch_token(self) -> AccessToken:
        if not self._client_id or not self._client_secret:
            raise ProviderUnavailableException(self.provider.value, "Provider credentials not configured")
        body = await self._request(
            "POST",
            self.token_path,
            op="authenticate",
            data={"grant_type": "client_credentials"},
            auth=(self._client_id, self._client_secret),
            authenticated=False,
        )
        try:
            value = str(body["access_token"])
            expires_in = int(body.get("expires_in", 0))
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedProviderPayloadException(self.provider.value, "token response") from exc
        return AccessToken(value=value, expires_at=self._clock() + timedelta(seconds=expires_in))

    # ---- http ----

    async def _request(
        self,
        method: str,
        path: str,
        *,
        op: str,
        json: Optional[Mapping[str, Any]] = None,
        data: Optional[Mapping[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        auth: Optional[tuple[str, str]] = None,
        authenticated: bool = True,
    ) -> dict[str, Any]:
        headers = {"Accept": "application/json"}
        if idempotency_key:
            headers[self.idempotency_header] = idempotency_key
        token: Optional[AccessToken] = None
        if authenticated:
            token = await self.tokens.get()
            headers["Authorization"] = f"Bearer {token.value}"

        started = self._clock()
        async with self.client() as http:
            try:
                response = await http.request(method, path, json=json, data=data, headers=headers, auth=auth)
            except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as exc:
                self._log("provider_call_unreachable", op=op, error=type(exc).__name__)
                raise ProviderUnavailableException(
                    self.provider.value, f"{op}: provider unreachable", outcome_unknown=False
                ) from exc
            except httpx.TransportError as exc:
                # Request may have reached the provider; outcome unknown
                self._log("provider_call_timeout", op=op, error=type(exc).__name__)
                raise ProviderUnavailableException(
                    self.provider.value, f"{op}: provider did not answer", outcome_unknown=True
                ) from exc

        self._log(
            "provider_call",
            op=op,
            status_code=response.status_code,
            elapsed_ms=int((self._clock() - started).total_seconds() * 1000),
        )
        status = response.status_code
        if status == 401 and token is not None:
            self.tokens.invalidate(token)
            raise ProviderUnavailableException(self.provider.value, f"{op}: access token rejected")
        if status >= 500 or status == 429:
            raise ProviderUnavailableException(
                self.provider.value,
                f"{op}: provider error {status}",
                outcome_unknown=status not in _NOT_APPLIED_STATUS,
            )
        if status >= 400:
            raise ProviderRejectedException(
                self.provider.value,
                self._error_reason(response),
                status_code=status,
            )
        return self._json(response, op)

    async def _download(self, url: str, *, op: str) -> bytes:
        """GET an absolute URL without provider auth and return the raw body."""
        async with self.client() as http:
            try:
                response = await http.get(url)
            except httpx.TransportError as exc:
                self._log("provider_download_failed", op=op, error=type(exc).__name__)
                raise ProviderUnavailableException(self.provider.value, f"{op}: download failed") from exc
        self._log("provider_download", op=op, status_code=response.status_code)
        if response.status_code != 200 or not response.content:
            raise ProviderUnavailableException(self.provider.value, f"{op}: HTTP {response.status_code}")
        return response.content

    def _json(self, response: httpx.Response, op: str) -> dict[str, Any]:
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as exc:
            raise MalformedProviderPayloadException(self.provider.value, f"{op}: non-JSON response") from exc
        if not isinstance(body, dict):
            raise MalformedProviderPayloadException(self.provider.value, f"{op}: unexpected response shape")
        return body

    @staticmethod
    def _error_reason(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200] or f"HTTP {response.status_code}"
        if isinstance(body, dict):
            for key in ("name", "error", "code", "message", "error_description"):
                if body.get(key):
                    return str(body[key])
            details = body.get("details")
            if isinstance(details, list) and details and isinstance(details[0], dict):
                return str(details[0].get("issue") or details[0].get("description") or "")
        return f"HTTP {response.status_code}"

    # ---- webhooks ----

    async def verify_webhook_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        ok = await self.signature_scheme.verify(raw_body, headers)
        if not ok:
            self._log("webhook_signature_invalid")
        return ok

    def _malformed(self, what: str, exc: Optional[Exception] = None) -> MalformedProviderPayloadException:
        reason = what
        if isinstance(exc, ValidationError):
            reason = f"{what}: {exc.error_count()} validation error(s)"
        return MalformedProviderPayloadException(self.provider.value, reason)

    # Helpers
    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider.value,
            **kwargs,
        )
