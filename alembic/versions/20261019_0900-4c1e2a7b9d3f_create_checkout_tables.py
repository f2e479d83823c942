"""create_checkout_tables

Revision ID: 4c1e2a7b9d3f
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '4c1e2a7b9d3f'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'orders',
        sa.Column('id', sa.String(length=40), nullable=False, comment='订单ID ord_<hex>'),
        sa.Column('amount', sa.Integer(), nullable=False, comment='订单金额（最小货币单位）'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码 ISO-4217'),
        sa.Column('status', sa.String(length=16), nullable=False, comment='订单状态: pending/paid/cancelled/refunded'),
        sa.Column('payment_ref', sa.String(length=40), nullable=True, comment='结清该订单的支付ID'),
        sa.Column('cancel_reason', sa.String(length=255), nullable=True, comment='取消原因'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, comment='更新时间'),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True, comment='支付时间'),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True, comment='退款时间'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_orders_status', 'orders', ['status'], unique=False)

    op.create_table(
        'order_status_history',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.String(length=40), nullable=False, comment='订单ID'),
        sa.Column('from_status', sa.String(length=16), nullable=True, comment='原状态（创建时为空）'),
        sa.Column('to_status', sa.String(length=16), nullable=False, comment='新状态'),
        sa.Column('payment_id', sa.String(length=40), nullable=True, comment='触发迁移的支付ID'),
        sa.Column('reason', sa.Text(), nullable=True, comment='原因'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='记录时间'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_order_status_history_order_id', 'order_status_history', ['order_id', 'id'], unique=False)

    op.create_table(
        'payments',
        sa.Column('id', sa.String(length=40), nullable=False, comment='支付ID pay_<hex>'),
        sa.Column('order_id', sa.String(length=40), nullable=False, comment='订单ID'),
        sa.Column('attempt', sa.Integer(), nullable=False, comment='订单内第几次支付尝试'),
        sa.Column('provider', sa.String(length=32), nullable=False, comment='支付提供商: card_wallet/mobile_money'),
        sa.Column('provider_ref', sa.String(length=200), nullable=True, comment='支付渠道的支付ID'),
        sa.Column('amount', sa.Integer(), nullable=False, comment='支付金额（最小货币单位）'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码 ISO-4217'),
        sa.Column('refunded_amount', sa.Integer(), server_default='0', nullable=False, comment='已受理的部分退款金额（最小货币单位）'),
        sa.Column('status', sa.String(length=16), nullable=False, comment='支付状态: pending/completed/failed/refunded'),
        sa.Column('last_provider_payload', sa.JSON(), nullable=True, comment='最近一次网关数据'),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True, comment='网关确认成功时间'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, comment='更新时间'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'provider_ref', name='uq_payments_provider_ref'),
        sa.UniqueConstraint('order_id', 'attempt', name='uq_payments_order_attempt'),
    )
    op.create_index('ix_payments_order_id', 'payments', ['order_id'], unique=False)
    op.create_index('ix_payments_provider', 'payments', ['provider'], unique=False)
    op.create_index('ix_payments_status', 'payments', ['status'], unique=False)
    op.create_index('ix_payments_status_updated_at', 'payments', ['status', 'updated_at'], unique=False)
    # 每个订单最多一条非终态支付
    op.create_index(
        'uq_payments_active_order_id',
        'payments',
        ['order_id'],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
        sqlite_where=sa.text("status = 'pending'"),
    )


def downgrade() -> None:
    op.drop_index('uq_payments_active_order_id', table_name='payments')
    op.drop_index('ix_payments_status_updated_at', table_name='payments')
    op.drop_index('ix_payments_status', table_name='payments')
    op.drop_index('ix_payments_provider', table_name='payments')
    op.drop_index('ix_payments_order_id', table_name='payments')
    op.drop_table('payments')
    op.drop_index('ix_order_status_history_order_id', table_name='order_status_history')
    op.drop_table('order_status_history')
    op.drop_index('ix_orders_status', table_name='orders')
    op.drop_table('orders')
