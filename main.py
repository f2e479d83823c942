"""
FastAPI应用主入口
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from api.routes import orders as orders_routes
from api.routes import payments as payments_routes
from api.routes import webhooks as webhooks_routes
from api.middleware import RequestIDMiddleware, LoggingMiddleware
from core.config import settings
from core.exceptions import register_exception_handlers
from core.response import success_response
from core.logging_config import get_logger, configure_logging
from core.settings import payment_settings
from infrastructure.database import create_tables, engine
from infrastructure.external.payments import build_payment_gateways


configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 启动时创建数据库表（仅开发环境）。生产应使用 Alembic 迁移
    if settings.DEBUG:
        await create_tables()
        logger.info("database_initialized", message="Database tables created (development)")
    else:
        logger.info(
            "database_migrations_required",
            message="No auto-create in production, use Alembic migrations (alembic upgrade head)"
        )

    # 支付网关客户端：每个客户端持有自己的连接池与令牌缓存
    app.state.payment_gateways = build_payment_gateways(payment_settings)
    logger.info("payment_gateways_initialized", providers=[g.provider.value for g in app.state.payment_gateways])

    yield

    await app.state.payment_gateways.aclose()
    await engine.dispose()
    logger.info("application_shutdown", message="Application shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="订单支付对账服务：结账、渠道回调与支付状态对账",
)

# 添加中间件（注意顺序：从下往上执行）
# 1. 日志中间件（内层，依赖request_id）
app.add_middleware(LoggingMiddleware)

# 2. Request ID中间件（外层，为日志中间件提供request_id）
app.add_middleware(RequestIDMiddleware)

# 3. CORS中间件
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册全局异常处理器
register_exception_handlers(app)


# 注册路由
app.include_router(orders_routes.router, prefix="/api/v1")
app.include_router(payments_routes.router, prefix="/api/v1")
app.include_router(webhooks_routes.router, prefix="/api/v1")


# 健康检查
@app.get("/health", tags=["Health"])
async def health_check():
    """健康检查端点"""
    return success_response(data={"status": "healthy"}, message="OK")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )
