"""
Request ID 中间件
用于生成或透传追踪ID，并通过 structlog contextvars 传递给日志系统
"""
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

import structlog


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Request ID 追踪中间件

    功能：
    1. 从请求头获取或生成新的request_id
    2. 绑定到structlog上下文，供同一请求内的所有日志使用
    3. 在响应头中返回request_id
    """

    HEADER_NAME = "X-Request-ID"

    async def dispatch(self, request: Request, call_next):
        # 从请求头获取request_id，如果不存在则生成新的
        request_id = request.headers.get(self.HEADER_NAME)
        if not request_id:
            request_id = str(uuid.uuid4())

        client_ip = self._get_client_ip(request)

        # 设置到request.state以便在应用内部访问
        request.state.request_id = request_id
        request.state.client_ip = client_ip

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            client_ip=client_ip,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)

        response.headers[self.HEADER_NAME] = request_id

        return response

    def _get_client_ip(self, request: Request) -> str:
        """
        获取客户端IP（仅用于日志；来源校验请使用直连地址）

        Args:
            request: FastAPI请求对象

        Returns:
            客户端IP地址
        """
        x_forwarded_for = request.headers.get("X-Forwarded-For")
        if x_forwarded_for:
            # 取第一个IP（原始客户端IP）
            return x_forwarded_for.split(",")[0].strip()
        client_ip = request.headers.get("X-Real-IP")
        if not client_ip:
            client_ip = request.client.host if request.client else "unknown"
        return client_ip
