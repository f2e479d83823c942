"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Column, Integer, String, DateTime, JSON,
    Index, ForeignKey, UniqueConstraint, text
)
from datetime import datetime, timezone

from .base import Base


class PaymentModel(Base):
    """
    支付数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有业务规则都在 domain.payment 中
    """
    __tablename__ = "payments"

    # 主键
    id = Column(String(40), primary_key=True, comment="支付ID pay_<hex>")

    # 订单信息
    order_id = Column(
        String(40),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="订单ID",
    )
    attempt = Column(Integer, nullable=False, default=1, comment="订单内第几次支付尝试")

    # 支付渠道信息
    provider = Column(String(32), nullable=False, index=True, comment="支付提供商: card_wallet/mobile_money")
    provider_ref = Column(String(200), nullable=True, comment="支付渠道的支付ID")

    # 金额信息（最小货币单位）
    amount = Column(Integer, nullable=False, comment="支付金额（最小货币单位）")
    currency = Column(String(3), nullable=False, comment="货币代码 ISO-4217")
    refunded_amount = Column(
        Integer, nullable=False, default=0, server_default="0", comment="已受理的部分退款金额（最小货币单位）"
    )

    # 状态
    status = Column(
        String(16),
        nullable=False,
        default="pending",
        index=True,
        comment="支付状态: pending/completed/failed/refunded"
    )

    # 最近一次网关原始数据（仅用于诊断，不参与控制流）
    last_provider_payload = Column(JSON, nullable=True, comment="最近一次网关数据")

    # 时间戳
    confirmed_at = Column(DateTime(timezone=True), nullable=True, comment="网关确认成功时间")
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="更新时间"
    )

    # 索引与约束
    __table_args__ = (
        UniqueConstraint("provider", "provider_ref", name="uq_payments_provider_ref"),
        UniqueConstraint("order_id", "attempt", name="uq_payments_order_attempt"),
        # 每个订单最多一条非终态支付
        Index(
            "uq_payments_active_order_id",
            "order_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
        Index("ix_payments_status_updated_at", "status", "updated_at"),
    )

    def __repr__(self):
        return (
            f"<PaymentModel(id='{self.id}', order_id='{self.order_id}', "
            f"provider='{self.provider}', amount={self.amount}, status='{self.status}')>"
        )
