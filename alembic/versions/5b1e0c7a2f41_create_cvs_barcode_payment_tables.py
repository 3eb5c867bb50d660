"""create_cvs_barcode_payment_tables

Revision ID: 5b1e0c7a2f41
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5b1e0c7a2f41'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'api_keys',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('key_name', sa.String(length=100), nullable=False),
        sa.Column('api_key', sa.String(length=100), nullable=False),
        sa.Column('client_system', sa.String(length=100), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('rate_limit', sa.Integer(), nullable=False),
        sa.Column('allowed_ips', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('key_name'),
    )
    op.create_index('ix_api_keys_api_key', 'api_keys', ['api_key'], unique=True)
    op.create_index('ix_api_keys_client_system', 'api_keys', ['client_system'])

    op.create_table(
        'third_party_orders',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('external_order_id', sa.String(length=100), nullable=False),
        sa.Column('client_system', sa.String(length=100), nullable=False),
        sa.Column('api_key_id', sa.Uuid(), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('product_info', sa.Text(), nullable=False),
        sa.Column('callback_url', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('payment_code', sa.String(length=100), nullable=True),
        sa.Column('payment_url', sa.Text(), nullable=True),
        sa.Column('barcode_data', sa.JSON(), nullable=True),
        sa.Column('barcode_status', sa.String(length=20), nullable=False),
        sa.Column('expire_at', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('internal_order_id', sa.Uuid(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['api_key_id'], ['api_keys.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_order_id', 'client_system', name='uq_third_party_orders_external_client'),
    )
    op.create_index('ix_third_party_orders_client_system', 'third_party_orders', ['client_system'])
    op.create_index('ix_third_party_orders_api_key_id', 'third_party_orders', ['api_key_id'])
    op.create_index('ix_third_party_orders_status_expire', 'third_party_orders', ['status', 'expire_at'])

    op.create_table(
        'ecpay_transactions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('third_party_order_id', sa.Uuid(), nullable=False),
        sa.Column('merchant_trade_no', sa.String(length=20), nullable=False),
        sa.Column('trade_no', sa.String(length=50), nullable=True),
        sa.Column('payment_type', sa.String(length=50), nullable=True),
        sa.Column('payment_date', sa.DateTime(), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('response_code', sa.String(length=20), nullable=True),
        sa.Column('response_msg', sa.Text(), nullable=True),
        sa.Column('raw_response', sa.JSON(), nullable=True),
        sa.Column('barcode_info', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['third_party_order_id'], ['third_party_orders.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('merchant_trade_no'),
    )
    op.create_index('ix_ecpay_transactions_third_party_order_id', 'ecpay_transactions', ['third_party_order_id'])

    op.create_table(
        'api_call_logs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('api_key_id', sa.Uuid(), nullable=True),
        sa.Column('client_system', sa.String(length=100), nullable=False),
        sa.Column('endpoint', sa.Text(), nullable=False),
        sa.Column('method', sa.String(length=10), nullable=False),
        sa.Column('response_status', sa.Integer(), nullable=False),
        sa.Column('processing_time', sa.Integer(), nullable=False),
        sa.Column('client_ip', sa.String(length=64), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['api_key_id'], ['api_keys.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_api_call_logs_api_key_id', 'api_call_logs', ['api_key_id'])
    op.create_index('ix_api_call_logs_client_system', 'api_call_logs', ['client_system'])
    op.create_index('ix_api_call_logs_created_at', 'api_call_logs', ['created_at'])


def downgrade() -> None:
    op.drop_table('api_call_logs')
    op.drop_table('ecpay_transactions')
    op.drop_table('third_party_orders')
    op.drop_table('api_keys')
