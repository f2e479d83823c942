"""SQLAlchemy Unit of Work 实现"""
from __future__ import annotations

from typing import Optional, Callable
import inspect

from sqlalchemy.exc import InterfaceError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.common.exceptions import StoreUnavailableException
from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.database import AsyncSessionLocal
from infrastructure.repositories.order_repository import SQLAlchemyOrderRepository
from infrastructure.repositories.payment_repository import SQLAlchemyPaymentRepository


logger = get_logger(__name__)

# 连接中断、锁等待超时、连接池耗尽等暂时性错误，调用方可退避重试
TRANSIENT_DB_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError)


class SQLAlchemyUnitOfWork(AbstractUnitOfWork):
    """基于SQLAlchemy的Unit of Work

    暂时性数据库错误在事务边界统一转换为 StoreUnavailableException。
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        session: Optional[AsyncSession] = None,
        *,
        readonly: bool = False,
    ) -> None:
        super().__init__(readonly=readonly)
        self._session_factory = session_factory
        self._external_session = session
        self.session: Optional[AsyncSession] = session

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        if self.session is None:
            self.session = self._session_factory()
        self.order_repository = SQLAlchemyOrderRepository(self.session)
        self.payment_repository = SQLAlchemyPaymentRepository(self.session)
        # 仅在非只读模式下显式开启事务
        if not self._readonly:
            try:
                self._transaction = await self.session.begin()
            except TRANSIENT_DB_ERRORS as exc:
                await self._close()
                raise StoreUnavailableException() from exc
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
        except TRANSIENT_DB_ERRORS as db_exc:
            logger.warning("store_unavailable", stage="finish", error=str(db_exc))
            raise StoreUnavailableException() from db_exc
        finally:
            await self._close()
        if isinstance(exc, TRANSIENT_DB_ERRORS):
            logger.warning("store_unavailable", stage="execute", error=str(exc))
            raise StoreUnavailableException() from exc

    async def _close(self) -> None:
        # 事务在 commit/rollback 后通常会结束，这里仅在仍然活动时做安全关闭
        tx = getattr(self, "_transaction", None)
        if tx is not None and getattr(tx, "is_active", False):
            close = getattr(tx, "close", None)
            if callable(close):
                res = close()
                if inspect.isawaitable(res):
                    await res
        if self._external_session is None and self.session is not None:
            await self.session.close()
            self.session = None
        self.order_repository = None  # type: ignore[assignment]
        self.payment_repository = None  # type: ignore[assignment]

    async def commit(self) -> None:
        if self._readonly:
            # 只读情况下不提交
            self._committed = True
            return
        if self.session and self.session.in_transaction():
            await self.session.commit()
        self._committed = True

    async def rollback(self) -> None:
        if self.session and self.session.in_transaction():
            await self.session.rollback()
        self._committed = False
