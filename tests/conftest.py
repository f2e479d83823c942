"""Pytest bootstrap configuration.

Environment variables are set before any application module is imported so
that module-level settings pick them up. Every test gets its own file-backed
SQLite database.
"""
import os
import json
from functools import partial
from typing import Any, Optional

os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///./.pytest-default.db")
os.environ.setdefault("PAYMENT__RETRY__BASE_BACKOFF", "0")
os.environ.setdefault("PAYMENT__RETRY__MAX_BACKOFF", "0")
os.environ.setdefault("PAYMENT__RETRY__MAX_ATTEMPTS", "3")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from application.dtos.payments import ProviderPaymentRequest, ProviderRefundResult, provider_event_adapter
from domain.common.exceptions import MalformedProviderPayloadException
from domain.payment.entity import PaymentProvider
from infrastructure.external.payments.signatures import header_value
from infrastructure.models import Base
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def uow_factory(session_factory):
    return partial(SQLAlchemyUnitOfWork, session_factory)


# ---- provider fakes ----


def webhook_body(provider_ref: str, status: str, event_id: str = "evt_1", amount: Optional[int] = None) -> bytes:
    doc = {"id": event_id, "ref": provider_ref, "status": status}
    if amount is not None:
        doc["amount"] = amount
    return json.dumps(doc).encode()


SIGNED = {"X-Test-Signature": "ok"}


class FakeGateway:
    """Scripted gateway: each queue holds results or exceptions, consumed in order."""

    def __init__(self, provider: PaymentProvider = PaymentProvider.CARD_WALLET):
        self.provider = provider
        self.create_results: list[Any] = []
        self.capture_results: list[Any] = []
        self.status_results: list[Any] = []
        self.refund_results: list[Any] = []
        self.calls: list[tuple[str, dict]] = []
        self._refs = 0

    @staticmethod
    def _next(queue: list[Any], default: Any) -> Any:
        if not queue:
            return default
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def authenticate(self):
        raise NotImplementedError

    async def create_payment_request(
        self,
        amount,
        currency,
        order_ref,
        callback_url,
        *,
        idempotency_key,
        return_url=None,
        cancel_url=None,
        payer_phone=None,
        description=None,
    ):
        self.calls.append(("create", {"order_ref": order_ref, "idempotency_key": idempotency_key, "amount": amount}))
        self._refs += 1
        default = ProviderPaymentRequest(
            provider_ref=f"{self.provider.value}-ref-{self._refs}",
            redirect_target="https://pay.example/approve",
            provider_status="CREATED",
        )
        return self._next(self.create_results, default)

    async def get_status(self, provider_ref: str):
        self.calls.append(("get_status", {"provider_ref": provider_ref}))
        status = self._next(self.status_results, "PENDING")
        return self.parse_capture_response({"ref": provider_ref, "status": status})

    async def capture(self, provider_ref: str, *, idempotency_key: str):
        self.calls.append(("capture", {"provider_ref": provider_ref, "idempotency_key": idempotency_key}))
        return self._next(self.capture_results, {"ref": provider_ref, "status": "COMPLETED"})

    async def refund(self, provider_ref: str, *, amount=None, currency: str, idempotency_key: str):
        self.calls.append(("refund", {"provider_ref": provider_ref, "idempotency_key": idempotency_key, "amount": amount}))
        default = ProviderRefundResult(refund_ref="rf_1", provider_status="REFUNDED", payload={"id": "rf_1"})
        return self._next(self.refund_results, default)

    async def verify_webhook_signature(self, raw_body: bytes, headers) -> bool:
        return header_value(headers, "X-Test-Signature") == "ok"

    def parse_webhook(self, raw_body: bytes):
        try:
            doc = json.loads(raw_body)
        except ValueError as exc:
            raise MalformedProviderPayloadException(self.provider.value, "not json") from exc
        return self._event(doc, event_id=doc.get("id") if isinstance(doc, dict) else None)

    def parse_capture_response(self, payload):
        return self._event(dict(payload))

    def _event(self, doc: Any, event_id: Optional[str] = None):
        if not isinstance(doc, dict) or not doc.get("ref"):
            raise MalformedProviderPayloadException(self.provider.value, "missing ref")
        return provider_event_adapter.validate_python(
            {
                "provider": self.provider.value,
                "event_id": event_id,
                "provider_ref": doc["ref"],
                "provider_status": doc.get("status"),
                "refund_amount": doc.get("amount"),
                "payload": doc,
            }
        )

    async def aclose(self) -> None:
        return None


class FakeRegistry:
    def __init__(self, *gateways: FakeGateway):
        self._gateways = {g.provider: g for g in gateways}

    def get(self, provider):
        try:
            return self._gateways[PaymentProvider(provider)]
        except (KeyError, ValueError):
            raise ValueError(f"Unsupported payment provider: {provider}") from None


class RecordingDispatcher:
    def __init__(self, fail: bool = False):
        self.notifications: list[tuple[str, str, Optional[str]]] = []
        self.polls: list[tuple[str, str, int]] = []
        self.fail = fail

    def notify_order_outcome(self, order_id: str, outcome: str, payment_id: Optional[str] = None) -> None:
        if self.fail:
            raise RuntimeError("broker down")
        self.notifications.append((order_id, outcome, payment_id))

    def schedule_status_poll(self, provider: str, provider_ref: str, *, countdown: int = 0) -> None:
        self.polls.append((provider, provider_ref, countdown))


@pytest.fixture
def card_gateway():
    return FakeGateway(PaymentProvider.CARD_WALLET)


@pytest.fixture
def mobile_gateway():
    return FakeGateway(PaymentProvider.MOBILE_MONEY)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def reconciliation(uow_factory, card_gateway, mobile_gateway, dispatcher):
    from application.services.reconciliation_service import ReconciliationService
    from core.settings import PaymentSettings

    return ReconciliationService(
        uow_factory,
        FakeRegistry(card_gateway, mobile_gateway),
        settings=PaymentSettings(),
        dispatcher=dispatcher,
        callback_base_url="https://shop.example/api/v1/webhooks",
    )


@pytest.fixture
def order_service(uow_factory):
    from application.services.order_service import OrderService

    return OrderService(uow_factory)
