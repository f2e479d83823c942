"""
Order and checkout routes.

Thin layer over OrderService and ReconciliationService; errors are rendered
by the global exception handlers with provider-agnostic kinds.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, status

from api.dependencies import get_order_service, get_reconciliation_service
from application.dtos.payments import CreateOrder, CreatePayment, RefundRequest
from application.services.order_service import OrderService
from application.services.reconciliation_service import ReconciliationService
from core.response import success_response


router = APIRouter(prefix="/orders", tags=["Orders"])


@router.post("", status_code=status.HTTP_201_CREATED, summary="Create order")
async def create_order(payload: CreateOrder, service: OrderService = Depends(get_order_service)):
    order = await service.create_order(payload)
    return success_response(data=order.model_dump(mode="json"), message="Order created")


@router.get("/{order_id}", summary="Get order with payments and history")
async def get_order(order_id: str, service: OrderService = Depends(get_order_service)):
    order = await service.get_order(order_id)
    return success_response(data=order.model_dump(mode="json"))


@router.post("/{order_id}/payments", status_code=status.HTTP_201_CREATED, summary="Start checkout")
async def create_payment(
    order_id: str,
    payload: CreatePayment,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    result = await service.create_payment(
        order_id,
        payload.provider,
        return_url=payload.return_url,
        cancel_url=payload.cancel_url,
        payer_phone=payload.payer_phone,
    )
    return success_response(data=result.model_dump(mode="json"), message="Payment created")


@router.post("/{order_id}/refund", summary="Refund a paid order, fully or partially")
async def refund_order(
    order_id: str,
    payload: Optional[RefundRequest] = None,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    outcome = await service.refund_order(order_id, amount=payload.amount if payload else None)
    return success_response(data=outcome.model_dump(mode="json"), message="Refund requested")
