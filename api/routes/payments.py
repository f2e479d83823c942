"""
Payment routes for synchronous capture and on-demand status sync.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_reconciliation_service
from application.services.reconciliation_service import ReconciliationService
from core.response import success_response
from domain.payment.entity import PaymentProvider


router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/{provider_ref}/capture", summary="Capture an approved payment")
async def capture_payment(
    provider_ref: str,
    provider: PaymentProvider = Query(...),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    result = await service.capture_payment(provider, provider_ref)
    return success_response(data=result.model_dump(mode="json"))


@router.post("/{provider_ref}/sync", summary="Poll the provider and reconcile")
async def sync_payment(
    provider_ref: str,
    provider: PaymentProvider = Query(...),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    result = await service.sync_status(provider, provider_ref)
    return success_response(data=result.model_dump(mode="json"))
