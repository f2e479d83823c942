"""
订单数据库模型
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index, Text
from datetime import datetime, timezone

from .base import Base


class OrderModel(Base):
    """订单表；只更新不删除"""
    __tablename__ = "orders"

    id = Column(String(40), primary_key=True, comment="订单ID ord_<hex>")
    amount = Column(Integer, nullable=False, comment="订单金额（最小货币单位）")
    currency = Column(String(3), nullable=False, comment="货币代码 ISO-4217")
    status = Column(
        String(16),
        nullable=False,
        default="pending",
        index=True,
        comment="订单状态: pending/paid/cancelled/refunded",
    )
    payment_ref = Column(String(40), nullable=True, comment="结清该订单的支付ID")
    cancel_reason = Column(String(255), nullable=True, comment="取消原因")

    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="创建时间",
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="更新时间",
    )
    paid_at = Column(DateTime(timezone=True), nullable=True, comment="支付时间")
    refunded_at = Column(DateTime(timezone=True), nullable=True, comment="退款时间")

    def __repr__(self):
        return f"<OrderModel(id='{self.id}', amount={self.amount}, status='{self.status}')>"


class OrderStatusHistoryModel(Base):
    """订单状态历史（只追加的审计记录）"""
    __tablename__ = "order_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(
        String(40),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        comment="订单ID",
    )
    from_status = Column(String(16), nullable=True, comment="原状态（创建时为空）")
    to_status = Column(String(16), nullable=False, comment="新状态")
    payment_id = Column(String(40), nullable=True, comment="触发迁移的支付ID")
    reason = Column(Text, nullable=True, comment="原因")
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="记录时间",
    )

    __table_args__ = (
        Index("ix_order_status_history_order_id", "order_id", "id"),
    )
