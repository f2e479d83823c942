"""
请求/响应日志中间件
记录所有HTTP请求和响应，包括耗时统计

Webhook 请求体属于渠道原始报文，永不记录。
"""
import json
import time
from typing import Any
from urllib.parse import parse_qs

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from core.logging_config import get_logger
from core.config import settings


logger = get_logger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    日志记录中间件

    功能：
    1. 记录请求信息（方法、路径、参数等）
    2. 记录响应信息（状态码、耗时等）
    3. 记录异常信息
    """

    # 跳过日志的路径
    SKIP_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}

    # 从不记录请求体的路径前缀
    NO_BODY_PREFIXES = ("/api/v1/webhooks",)

    # 敏感字段，日志中需要脱敏
    SENSITIVE_FIELDS = {"phone", "payer_phone", "token", "secret", "access_token", "client_secret", "signature"}

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.enable_body_log_default: bool = settings.LOG_REQUEST_BODY_ENABLE_BY_DEFAULT
        self.max_body_log_bytes: int = settings.LOG_REQUEST_BODY_MAX_BYTES

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.SKIP_PATHS:
            return await call_next(request)

        start_time = time.time()

        request_info = await self._get_request_info(request)

        logger.info(
            "request_started",
            **request_info
        )

        try:
            response = await call_next(request)

            duration = time.time() - start_time

            self._log_response(response, duration, request_info)

            response.headers["X-Process-Time"] = f"{duration:.3f}"

            return response

        except Exception as exc:
            duration = time.time() - start_time

            logger.error(
                "request_failed",
                duration=duration,
                error=str(exc),
                error_type=type(exc).__name__,
                **request_info,
                exc_info=True
            )

            # 重新抛出异常，让异常处理器处理
            raise

    async def _get_request_info(self, request: Request) -> dict:
        """
        获取请求信息

        Args:
            request: FastAPI请求对象

        Returns:
            请求信息字典
        """
        info = {
            "method": request.method,
            "path": request.url.path,
            "query_params": dict(request.query_params),
        }

        if request.method in ["POST", "PUT", "PATCH"] and self._should_log_body(request):
            body_snippet = await self._extract_and_sanitize_body(request)
            if body_snippet is not None:
                info["body"] = body_snippet
            else:
                info["has_body"] = True

        user_agent = request.headers.get("User-Agent")
        if user_agent:
            info["user_agent"] = user_agent

        return info

    def _should_log_body(self, request: Request) -> bool:
        if request.url.path.startswith(self.NO_BODY_PREFIXES):
            return False
        # X-Log-Body: true/false 可按请求覆盖默认值
        header = (request.headers.get("X-Log-Body") or "").lower()
        if header in {"true", "1", "yes"}:
            return True
        if header in {"false", "0", "no"}:
            return False
        return bool(self.enable_body_log_default and settings.DEBUG)

    async def _extract_and_sanitize_body(self, request: Request) -> Any:
        body = await request.body()
        if not body:
            return None

        snippet = body[: self.max_body_log_bytes]
        text = snippet.decode("utf-8", errors="ignore")

        content_type = request.headers.get("content-type", "").lower()
        parsed: Any = text
        if "application/json" in content_type:
            try:
                parsed = json.loads(text)
            except ValueError:
                parsed = text
        elif "application/x-www-form-urlencoded" in content_type:
            parsed = {k: v if len(v) > 1 else v[0] for k, v in parse_qs(text).items()}
        elif "multipart/form-data" in content_type:
            return {"multipart": True}

        return self._sanitize_data(parsed)

    def _sanitize_data(self, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: ("***" if str(k).lower() in self.SENSITIVE_FIELDS else self._sanitize_data(v)) for k, v in data.items()}
        if isinstance(data, list):
            return [self._sanitize_data(v) for v in data]
        return data

    def _log_response(self, response: Response, duration: float, request_info: dict):
        """
        记录响应日志

        Args:
            response: FastAPI响应对象
            duration: 请求处理时间
            request_info: 请求信息
        """
        status_code = response.status_code

        log_data = {
            "status_code": status_code,
            "duration": duration,
            **request_info
        }

        if status_code < 400:
            logger.info("request_completed", **log_data)
        elif status_code < 500:
            logger.warning("request_client_error", **log_data)
        else:
            logger.error("request_server_error", **log_data)
