"""
Provider webhook intake.

The raw body is handed to the reconciliation service untouched so the
signature is checked over the exact bytes the provider signed. Any classified
delivery (applied, ignored, rejected for business reasons) is acknowledged
with 200 so the provider stops redelivering; authentication and parse
failures answer 400 and store outages 503.
"""
from __future__ import annotations

import ipaddress
from typing import Optional, Sequence

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from api.dependencies import get_payment_settings, get_reconciliation_service
from application.dtos.payments import OutcomeSource, ReconciliationOutcome
from application.services.reconciliation_service import ReconciliationService
from core.logging_config import get_logger
from core.response import error_response, success_response
from core.settings import PaymentSettings
from domain.payment.entity import PaymentProvider
from shared.codes.payment_codes import PaymentCode


router = APIRouter(prefix="/webhooks", tags=["Webhooks"])
logger = get_logger(__name__)

_BAD_REQUEST_REASONS = {
    "bad_signature": PaymentCode.SIGNATURE_ERROR,
    "malformed_payload": PaymentCode.MALFORMED_PAYLOAD,
}


def ip_allowed(remote_ip: Optional[str], allowlist: Optional[Sequence[str]]) -> bool:
    """Empty allowlist admits everyone; entries are single IPs or CIDR blocks."""
    if not allowlist:
        return True
    if not remote_ip:
        return False
    try:
        rip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if rip in ipaddress.ip_network(entry.strip(), strict=False):
                return True
        except ValueError:
            logger.warning("webhook_allowlist_entry_invalid", entry=entry)
    return False


@router.post("/{provider}", summary="Provider webhook")
async def receive_webhook(
    provider: str,
    request: Request,
    service: ReconciliationService = Depends(get_reconciliation_service),
    config: PaymentSettings = Depends(get_payment_settings),
):
    try:
        provider_enum = PaymentProvider(provider.lower())
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown payment provider")

    remote_ip = request.client.host if request.client else None
    if not ip_allowed(remote_ip, config.webhook.ip_allowlist):
        logger.warning("webhook_source_rejected", provider=provider_enum.value, remote_ip=remote_ip)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Source not allowed")

    raw_body = await request.body()
    headers = {k: v for k, v in request.headers.items()}
    result = await service.apply_outcome(OutcomeSource.WEBHOOK, provider_enum, raw_body, headers)

    code = _BAD_REQUEST_REASONS.get(result.reason or "") if result.outcome == ReconciliationOutcome.REJECTED else None
    if code is not None:
        response = error_response(
            code=code,
            message="Webhook rejected",
            error_type="payment_rejected" if code == PaymentCode.SIGNATURE_ERROR else "validation_error",
            details={"reason": result.reason},
            request_id=getattr(request.state, "request_id", None),
        )
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=response.model_dump(mode="json"))

    return success_response(
        data={"outcome": result.outcome.value, "reason": result.reason},
        message="Webhook received",
    )
