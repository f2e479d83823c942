"""领域层业务异常定义，供领域、应用与基础设施使用。

核心（core）层仅负责全局映射与异常处理，尽量避免领域层反向依赖核心层。
支付网关相关异常同样定义在这里，使应用层无需依赖基础设施层即可区分
可重试（暂时性）与终态（语义性）错误。
"""
from __future__ import annotations

from typing import Optional
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )


# ---- 查找类 ----


class OrderNotFoundException(BusinessException):
    def __init__(self, order_id: str):
        super().__init__(
            code=PaymentCode.ORDER_NOT_FOUND,
            message="Order not found",
            error_type="OrderNotFound",
            details={"order_id": order_id},
        )


class PaymentNotFoundException(BusinessException):
    def __init__(self, payment_id: str):
        super().__init__(
            code=PaymentCode.PAYMENT_NOT_FOUND,
            message="Payment not found",
            error_type="PaymentNotFound",
            details={"payment_id": payment_id},
        )


class UnknownProviderRefException(BusinessException):
    def __init__(self, provider: str, provider_ref: str):
        super().__init__(
            code=PaymentCode.UNKNOWN_PROVIDER_REF,
            message="No payment is correlated with this provider reference",
            error_type="UnknownProviderRef",
            details={"provider": provider, "provider_ref": provider_ref},
        )


# ---- 冲突类 ----


class ActivePaymentExistsException(BusinessException):
    def __init__(self, order_id: str, payment_id: Optional[str] = None):
        details = {"order_id": order_id}
        if payment_id:
            details["payment_id"] = payment_id
        super().__init__(
            code=PaymentCode.ACTIVE_PAYMENT_EXISTS,
            message="Order already has an active payment attempt",
            error_type="ActivePaymentExists",
            details=details,
        )


class DuplicateProviderRefException(BusinessException):
    def __init__(self, provider: str, provider_ref: str):
        super().__init__(
            code=PaymentCode.DUPLICATE_PROVIDER_REF,
            message="Provider reference already attached to another payment",
            error_type="DuplicateProviderRef",
            details={"provider": provider, "provider_ref": provider_ref},
        )


class StaleTransitionException(BusinessException):
    def __init__(self, entity_id: str, expected: str, actual: str):
        super().__init__(
            code=PaymentCode.STALE_TRANSITION,
            message="Record changed concurrently",
            error_type="StaleTransition",
            details={"id": entity_id, "expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class IllegalTransitionException(BusinessException):
    def __init__(self, entity: str, entity_id: str, from_status: str, to_status: str):
        super().__init__(
            code=PaymentCode.ILLEGAL_TRANSITION,
            message=f"Illegal {entity} transition {from_status} -> {to_status}",
            error_type="IllegalTransition",
            details={"entity": entity, "id": entity_id, "from": from_status, "to": to_status},
        )


class AlreadySettledException(BusinessException):
    def __init__(self, order_id: str, settled_by: Optional[str], attempted: str):
        super().__init__(
            code=PaymentCode.ALREADY_SETTLED,
            message="Order already settled by another payment",
            error_type="AlreadySettled",
            details={"order_id": order_id, "settled_by": settled_by, "attempted": attempted},
        )


# ---- 支付网关 / 存储 ----


class ProviderUnavailableException(BusinessException):
    """网关不可用（网络错误、超时、5xx/429）。

    outcome_unknown 为 True 表示请求可能已被网关处理（例如读超时），
    此时不得据此把支付标记为失败。
    """

    def __init__(self, provider: str, message: str = "Payment provider unavailable", *, outcome_unknown: bool = False):
        super().__init__(
            code=PaymentCode.PROVIDER_UNAVAILABLE,
            message=message,
            error_type="ProviderUnavailable",
            details={"provider": provider},
        )
        self.provider = provider
        self.outcome_unknown = outcome_unknown


class ProviderRejectedException(BusinessException):
    """网关明确拒绝请求（4xx）。reason 仅用于日志，不对外暴露。"""

    def __init__(self, provider: str, reason: str, *, status_code: Optional[int] = None):
        super().__init__(
            code=PaymentCode.PROVIDER_REJECTED,
            message="Payment provider rejected the request",
            error_type="ProviderRejected",
            details={"provider": provider},
        )
        self.provider = provider
        self.reason = reason
        self.status_code = status_code


class RefundNotAllowedException(BusinessException):
    def __init__(self, provider: str, reason: str = "payment is not refundable"):
        super().__init__(
            code=PaymentCode.REFUND_NOT_ALLOWED,
            message="Payment is not in a refundable state",
            error_type="RefundNotAllowed",
            details={"provider": provider},
        )
        self.provider = provider
        self.reason = reason


class MalformedProviderPayloadException(BusinessException):
    def __init__(self, provider: str, reason: str):
        super().__init__(
            code=PaymentCode.MALFORMED_PAYLOAD,
            message="Malformed provider payload",
            error_type="MalformedProviderPayload",
            details={"provider": provider},
        )
        self.provider = provider
        self.reason = reason


class StoreUnavailableException(BusinessException):
    def __init__(self, message: str = "Payment store temporarily unavailable"):
        super().__init__(
            code=PaymentCode.STORE_UNAVAILABLE,
            message=message,
            error_type="StoreUnavailable",
        )
