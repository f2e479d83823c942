"""
Payment specific codes, public error kinds and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum
from typing import Optional


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    PROVIDER_UNAVAILABLE = 60000
    PROVIDER_REJECTED = 60001
    SIGNATURE_ERROR = 60002
    MALFORMED_PAYLOAD = 60003
    REFUND_NOT_ALLOWED = 60004

    # Ledger/order conflicts (61xxx)
    ACTIVE_PAYMENT_EXISTS = 61000
    DUPLICATE_PROVIDER_REF = 61001
    STALE_TRANSITION = 61002
    ILLEGAL_TRANSITION = 61003
    ALREADY_SETTLED = 61004

    # Lookups (62xxx)
    ORDER_NOT_FOUND = 62000
    PAYMENT_NOT_FOUND = 62001
    UNKNOWN_PROVIDER_REF = 62002

    # Store (63xxx)
    STORE_UNAVAILABLE = 63000


# Provider-agnostic error kinds exposed to API callers
PUBLIC_ERROR_KIND = {
    PaymentCode.PROVIDER_UNAVAILABLE: "payment_unavailable",
    PaymentCode.STORE_UNAVAILABLE: "payment_unavailable",
    PaymentCode.PROVIDER_REJECTED: "payment_rejected",
    PaymentCode.REFUND_NOT_ALLOWED: "payment_rejected",
    PaymentCode.SIGNATURE_ERROR: "payment_rejected",
    PaymentCode.MALFORMED_PAYLOAD: "payment_unavailable",
    PaymentCode.ACTIVE_PAYMENT_EXISTS: "payment_conflict",
    PaymentCode.DUPLICATE_PROVIDER_REF: "payment_conflict",
    PaymentCode.STALE_TRANSITION: "payment_conflict",
    PaymentCode.ILLEGAL_TRANSITION: "payment_conflict",
    PaymentCode.ALREADY_SETTLED: "payment_conflict",
    PaymentCode.ORDER_NOT_FOUND: "not_found",
    PaymentCode.PAYMENT_NOT_FOUND: "not_found",
    PaymentCode.UNKNOWN_PROVIDER_REF: "not_found",
}


# Provider status -> internal payment status. Anything absent is unmapped
# and must be ignored by reconciliation.
PROVIDER_STATUS_TO_INTERNAL = {
    "card_wallet": {
        "COMPLETED": "completed",
        "DENIED": "failed",
        "DECLINED": "failed",
        "FAILED": "failed",
        "VOIDED": "failed",
        "REFUNDED": "refunded",
    },
    "mobile_money": {
        "COMPLETED": "completed",
        "SUCCESS": "completed",
        "FAILED": "failed",
        "REJECTED": "failed",
        "CANCELED": "failed",
        "EXPIRED": "failed",
        "REFUNDED": "refunded",
    },
}


def map_provider_status(provider: str, provider_status: Optional[str]) -> Optional[str]:
    if not provider_status:
        return None
    table = PROVIDER_STATUS_TO_INTERNAL.get(provider, {})
    return table.get(provider_status.strip().upper())


__all__ = [
    "PaymentCode",
    "PUBLIC_ERROR_KIND",
    "PROVIDER_STATUS_TO_INTERNAL",
    "map_provider_status",
]
