import json
from datetime import datetime, timezone

import httpx
import pytest

from core.settings import MobileMoneySettings, PaymentTimeouts
from domain.common.exceptions import (
    MalformedProviderPayloadException,
    ProviderRejectedException,
    ProviderUnavailableException,
    RefundNotAllowedException,
)
from infrastructure.external.payments.mobile_money_client import MobileMoneyClient

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _client(handler):
    calls = []

    def record(request):
        calls.append(request)
        if request.url.path == "/oauth2/token":
            return httpx.Response(200, json={"access_token": "mm-token", "expires_in": 3600})
        return handler(request)

    client = MobileMoneyClient(
        MobileMoneySettings(client_id="cid", client_secret="secret", webhook_secret="mm-secret"),
        timeouts=PaymentTimeouts(),
        token_refresh_margin_seconds=600,
        webhook_tolerance_seconds=300,
        transport=httpx.MockTransport(record),
        clock=lambda: NOW,
    )
    return client, calls


@pytest.mark.asyncio
async def test_create_payment_request_pushes_to_phone():
    client, calls = _client(
        lambda r: httpx.Response(201, json={"paymentId": "MM-1", "status": "PENDING"})
    )

    result = await client.create_payment_request(
        250000,
        "COP",
        "ord_1",
        "https://shop.example/api/v1/webhooks/mobile_money",
        idempotency_key="key-1",
        payer_phone="3001234567",
    )

    assert result.provider_ref == "MM-1"
    assert result.provider_status == "PENDING"
    request = calls[-1]
    assert request.url.path == "/v1/payments/requests"
    assert request.headers["Idempotency-Key"] == "key-1"
    assert request.headers["Authorization"] == "Bearer mm-token"
    body = json.loads(request.content)
    assert body["amount"] == {"value": "2500.00", "currency": "COP"}
    assert body["phone"] == "3001234567"
    assert body["reference"] == "ord_1"
    assert body["callbackUrl"].endswith("/mobile_money")
    await client.aclose()


@pytest.mark.asyncio
async def test_create_without_phone_is_rejected_locally():
    client, calls = _client(lambda r: httpx.Response(500))
    with pytest.raises(ProviderRejectedException):
        await client.create_payment_request(100, "COP", "ord_1", None, idempotency_key="k")
    assert calls == []


@pytest.mark.asyncio
async def test_capture_is_not_supported():
    client, calls = _client(lambda r: httpx.Response(200, json={}))
    with pytest.raises(ProviderRejectedException):
        await client.capture("MM-1", idempotency_key="k")
    assert calls == []


@pytest.mark.asyncio
async def test_get_status_parses_document():
    client, _ = _client(lambda r: httpx.Response(200, json={"paymentId": "MM-1", "status": "SUCCESS"}))
    event = await client.get_status("MM-1")
    assert event.provider == "mobile_money"
    assert event.provider_ref == "MM-1"
    assert event.provider_status == "SUCCESS"
    await client.aclose()


@pytest.mark.asyncio
async def test_get_status_missing_id_is_malformed():
    client, _ = _client(lambda r: httpx.Response(200, json={"status": "SUCCESS"}))
    with pytest.raises(MalformedProviderPayloadException):
        await client.get_status("MM-1")
    await client.aclose()


@pytest.mark.asyncio
async def test_write_timeout_is_outcome_unknown():
    def slow(request):
        raise httpx.WriteTimeout("write timed out", request=request)

    client, _ = _client(slow)
    with pytest.raises(ProviderUnavailableException) as exc:
        await client.create_payment_request(100, "COP", "ord_1", None, idempotency_key="k", payer_phone="3001234567")
    assert exc.value.outcome_unknown is True
    await client.aclose()


@pytest.mark.asyncio
async def test_refund_normalises_success_status():
    client, calls = _client(lambda r: httpx.Response(200, json={"refundId": "RF-1", "status": "SUCCESS"}))
    result = await client.refund("MM-1", amount=5000, currency="COP", idempotency_key="rk")

    assert result.refund_ref == "RF-1"
    assert result.provider_status == "REFUNDED"
    assert json.loads(calls[-1].content) == {"amount": {"value": "50.00", "currency": "COP"}}
    await client.aclose()


@pytest.mark.asyncio
async def test_refund_pending_status_is_kept():
    client, _ = _client(lambda r: httpx.Response(202, json={"id": "RF-2", "status": "pending"}))
    result = await client.refund("MM-1", currency="COP", idempotency_key="rk")
    assert result.provider_status == "PENDING"
    await client.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [409, 422])
async def test_refund_conflicts_are_not_allowed(status_code):
    client, _ = _client(lambda r: httpx.Response(status_code, json={"code": "ALREADY_REFUNDED"}))
    with pytest.raises(RefundNotAllowedException) as exc:
        await client.refund("MM-1", currency="COP", idempotency_key="rk")
    assert exc.value.reason == "ALREADY_REFUNDED"
    await client.aclose()


def test_parse_webhook():
    client, _ = _client(lambda r: httpx.Response(200))
    body = json.dumps(
        {"eventId": "E-1", "eventType": "PAYMENT_STATUS_CHANGED", "paymentId": "MM-1", "status": "REJECTED"}
    ).encode()

    event = client.parse_webhook(body)

    assert event.event_id == "E-1"
    assert event.provider_ref == "MM-1"
    assert event.provider_status == "REJECTED"


@pytest.mark.parametrize(
    "body",
    [b"\xff\xfe", b"{}", b'{"eventType": "X", "paymentId": "MM-1"}', b'{"eventType": "X", "paymentId": "", "status": "S"}'],
)
def test_parse_webhook_malformed(body):
    client, _ = _client(lambda r: httpx.Response(200))
    with pytest.raises(MalformedProviderPayloadException):
        client.parse_webhook(body)


def test_parse_refund_webhook_carries_refunded_amount():
    client, _ = _client(lambda r: httpx.Response(200))
    body = json.dumps(
        {
            "eventId": "E-2",
            "eventType": "PAYMENT_REFUNDED",
            "paymentId": "MM-1",
            "status": "REFUNDED",
            "amount": {"value": "1000.50", "currency": "COP"},
        }
    ).encode()

    event = client.parse_webhook(body)

    assert event.provider_status == "REFUNDED"
    assert event.refund_amount == 100050


def test_parse_refund_webhook_with_garbage_amount_is_malformed():
    client, _ = _client(lambda r: httpx.Response(200))
    body = json.dumps(
        {"eventType": "PAYMENT_REFUNDED", "paymentId": "MM-1", "status": "REFUNDED", "amount": {"value": "lots"}}
    ).encode()
    with pytest.raises(MalformedProviderPayloadException):
        client.parse_webhook(body)


@pytest.mark.asyncio
async def test_create_payment_request_exposes_qr_image():
    client, _ = _client(
        lambda r: httpx.Response(201, json={"paymentId": "MM-2", "status": "PENDING", "qrImageBase64": "iVBORw0KGgo="})
    )

    result = await client.create_payment_request(
        1000, "COP", "ord_2", None, idempotency_key="key-2", payer_phone="3001234567"
    )

    assert result.qr_image == "iVBORw0KGgo="
    assert result.redirect_target is None
    await client.aclose()


@pytest.mark.asyncio
async def test_verify_webhook_signature():
    client, _ = _client(lambda r: httpx.Response(200))
    body = b'{"eventType":"X"}'
    ts = str(int(NOW.timestamp()))
    signature = client.signature_scheme.sign(body, ts)

    assert await client.verify_webhook_signature(body, {"X-Nequi-Signature": signature, "X-Nequi-Timestamp": ts})
    assert not await client.verify_webhook_signature(body, {"X-Nequi-Signature": "0" * 64, "X-Nequi-Timestamp": ts})
    await client.aclose()
