"""
异常到 HTTP 响应的映射与全局异常处理器

支付相关错误对外只暴露与渠道无关的错误种类（payment_unavailable、
payment_conflict、payment_rejected、not_found、validation_error），
渠道原始报文从不出现在响应中。
"""
from fastapi import FastAPI, Request
from starlette.exceptions import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import traceback
import uuid
from starlette import status as http_status

from .response import error_response
from shared.codes import BusinessCode
from shared.codes.payment_codes import PUBLIC_ERROR_KIND, PaymentCode
from core.logging_config import get_logger
from domain.common.exceptions import BusinessException


_HTTP_STATUS_BY_CODE = {
    BusinessCode.PARAM_ERROR: http_status.HTTP_400_BAD_REQUEST,
    BusinessCode.PARAM_MISSING: http_status.HTTP_400_BAD_REQUEST,
    BusinessCode.PARAM_TYPE_ERROR: http_status.HTTP_400_BAD_REQUEST,
    BusinessCode.PARAM_VALIDATION_ERROR: http_status.HTTP_422_UNPROCESSABLE_ENTITY,
    BusinessCode.BUSINESS_ERROR: http_status.HTTP_400_BAD_REQUEST,
    BusinessCode.NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    BusinessCode.PERMISSION_ERROR: http_status.HTTP_403_FORBIDDEN,
    BusinessCode.UNAUTHORIZED: http_status.HTTP_401_UNAUTHORIZED,
    BusinessCode.FORBIDDEN: http_status.HTTP_403_FORBIDDEN,
    BusinessCode.SYSTEM_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    BusinessCode.DATABASE_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    BusinessCode.NETWORK_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    BusinessCode.SERVICE_UNAVAILABLE: http_status.HTTP_503_SERVICE_UNAVAILABLE,

    PaymentCode.PROVIDER_UNAVAILABLE: http_status.HTTP_503_SERVICE_UNAVAILABLE,
    PaymentCode.STORE_UNAVAILABLE: http_status.HTTP_503_SERVICE_UNAVAILABLE,
    PaymentCode.PROVIDER_REJECTED: http_status.HTTP_422_UNPROCESSABLE_ENTITY,
    PaymentCode.REFUND_NOT_ALLOWED: http_status.HTTP_422_UNPROCESSABLE_ENTITY,
    PaymentCode.SIGNATURE_ERROR: http_status.HTTP_400_BAD_REQUEST,
    PaymentCode.MALFORMED_PAYLOAD: http_status.HTTP_502_BAD_GATEWAY,
    PaymentCode.ACTIVE_PAYMENT_EXISTS: http_status.HTTP_409_CONFLICT,
    PaymentCode.DUPLICATE_PROVIDER_REF: http_status.HTTP_409_CONFLICT,
    PaymentCode.STALE_TRANSITION: http_status.HTTP_409_CONFLICT,
    PaymentCode.ILLEGAL_TRANSITION: http_status.HTTP_409_CONFLICT,
    PaymentCode.ALREADY_SETTLED: http_status.HTTP_409_CONFLICT,
    PaymentCode.ORDER_NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    PaymentCode.PAYMENT_NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    PaymentCode.UNKNOWN_PROVIDER_REF: http_status.HTTP_404_NOT_FOUND,
}


def business_code_to_http_status(code: int) -> int:
    """根据业务码映射HTTP状态码（默认400）。"""
    return _HTTP_STATUS_BY_CODE.get(code, http_status.HTTP_400_BAD_REQUEST)


def public_error_type(exc: BusinessException) -> str:
    """支付错误使用公开错误种类，其余沿用异常自身类型。"""
    if exc.code == BusinessCode.PARAM_VALIDATION_ERROR:
        return "validation_error"
    return PUBLIC_ERROR_KIND.get(exc.code, exc.error_type)


def _request_id(request: Request) -> str:
    return getattr(getattr(request, "state", object()), "request_id", None) or str(uuid.uuid4())


def register_exception_handlers(app: FastAPI):
    """
    注册全局异常处理器

    Args:
        app: FastAPI应用实例
    """

    logger = get_logger(__name__)

    @app.exception_handler(BusinessException)
    async def business_exception_handler(request: Request, exc: BusinessException):
        """处理业务异常"""
        request_id = _request_id(request)
        status_code = business_code_to_http_status(exc.code)
        error_type = public_error_type(exc)
        response = error_response(
            code=exc.code,
            message=exc.message,
            error_type=error_type,
            details=exc.details,
            field=exc.field,
            request_id=request_id,
        )
        log = logger.warning if status_code >= 500 else logger.info
        log(
            "business_exception",
            request_id=request_id,
            code=int(exc.code),
            error_type=exc.error_type,
            status_code=status_code,
            path=request.url.path,
        )
        return JSONResponse(status_code=status_code, content=response.model_dump(mode='json'))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """处理参数验证异常"""
        request_id = _request_id(request)
        errors = exc.errors()

        # 提取第一个错误的详细信息
        first_error = errors[0] if errors else {}
        field = ".".join(str(loc) for loc in first_error.get("loc", [])[1:])

        response = error_response(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=f"Validation failed: {first_error.get('msg', 'unknown')}",
            error_type="validation_error",
            details={"errors": [
                {"loc": [str(p) for p in e.get("loc", [])], "msg": e.get("msg"), "type": e.get("type")}
                for e in errors
            ]},
            field=field or None,
            request_id=request_id,
        )
        return JSONResponse(
            status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=response.model_dump(mode='json')
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """处理HTTP异常"""
        request_id = _request_id(request)

        # 映射HTTP状态码到业务码
        code_mapping = {
            401: BusinessCode.UNAUTHORIZED,
            403: BusinessCode.FORBIDDEN,
            404: BusinessCode.NOT_FOUND,
            500: BusinessCode.SYSTEM_ERROR,
            503: BusinessCode.SERVICE_UNAVAILABLE
        }
        code = code_mapping.get(exc.status_code, BusinessCode.SYSTEM_ERROR)

        response = error_response(
            code=code,
            message=str(exc.detail),
            error_type="not_found" if exc.status_code == 404 else "HTTPError",
            details={"status_code": exc.status_code},
            request_id=request_id,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=response.model_dump(mode='json'),
            headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """处理所有未捕获的异常"""
        request_id = _request_id(request)

        # 在开发环境可以返回详细错误信息
        details = None
        if app.debug:
            details = {
                "exception": str(exc),
                "traceback": traceback.format_exc()
            }

        response = error_response(
            code=BusinessCode.SYSTEM_ERROR,
            message="Internal server error",
            error_type="SystemError",
            details=details,
            request_id=request_id,
        )

        logger.error(
            "unhandled_exception",
            request_id=request_id,
            error=str(exc),
            exc_info=True,
        )

        return JSONResponse(
            status_code=http_status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=response.model_dump(mode='json')
        )
