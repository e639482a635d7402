"""Credit ledger schema: balances, ledger, configs, purchases, usage, grants

Revision ID: 001_credit_ledger
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_credit_ledger'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    # credit_balances: one row per (tenant, entity)
    op.create_table(
        'credit_balances',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=False),
        sa.Column('entity_type', sa.String(50), nullable=False, server_default='organization'),
        sa.Column('entity_id', sa.UUID(), nullable=False),
        sa.Column('available_credits', sa.Numeric(15, 4), nullable=False, server_default='0'),
        sa.Column('reserved_credits', sa.Numeric(15, 4), nullable=False, server_default='0'),
        sa.Column('total_consumed', sa.Numeric(15, 4), nullable=False, server_default='0'),
        sa.Column('total_expired', sa.Numeric(15, 4), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_credit_balances')),
        sa.UniqueConstraint('tenant_id', 'entity_id', name='uq_credit_balances_tenant_entity'),
        sa.CheckConstraint('available_credits >= 0', name=op.f('ck_credit_balances_available_non_negative')),
        sa.CheckConstraint('reserved_credits >= 0', name=op.f('ck_credit_balances_reserved_non_negative')),
    )
    op.create_index(op.f('ix_credit_balances_tenant_id'), 'credit_balances', ['tenant_id'])

    # credit_transactions: append-only ledger
    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=False),
        sa.Column('entity_type', sa.String(50), nullable=False),
        sa.Column('entity_id', sa.UUID(), nullable=False),
        sa.Column('transaction_type', sa.String(30), nullable=False),
        sa.Column('direction', sa.String(10), nullable=False),
        sa.Column('amount', sa.Numeric(15, 4), nullable=False),
        sa.Column('previous_balance', sa.Numeric(15, 4), nullable=False),
        sa.Column('new_balance', sa.Numeric(15, 4), nullable=False),
        sa.Column('operation_code', sa.String(255), nullable=True),
        sa.Column('operation_id', sa.String(255), nullable=True),
        sa.Column('correlation_id', sa.UUID(), nullable=True),
        sa.Column('purchase_id', sa.UUID(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('metadata_json', sa.JSON(), nullable=True),
        sa.Column('initiated_by', sa.UUID(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_credit_transactions')),
    )
    op.create_index(op.f('ix_credit_transactions_tenant_id'), 'credit_transactions', ['tenant_id'])
    op.create_index(op.f('ix_credit_transactions_transaction_type'), 'credit_transactions', ['transaction_type'])
    op.create_index(op.f('ix_credit_transactions_correlation_id'), 'credit_transactions', ['correlation_id'])
    op.create_index('ix_credit_transactions_tenant_created', 'credit_transactions', ['tenant_id', 'created_at'])
    op.create_index(
        'ix_credit_transactions_entity_operation', 'credit_transactions', ['tenant_id', 'entity_id', 'operation_id']
    )

    # credit_configs: operation / module / application pricing, global or per tenant
    op.create_table(
        'credit_configs',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('config_level', sa.String(20), nullable=False),
        sa.Column('code', sa.String(255), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=True),
        sa.Column('scope', sa.String(20), nullable=False, server_default='global'),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('description', sa.String(1000), nullable=True),
        sa.Column('credit_cost', sa.Numeric(15, 4), nullable=True),
        sa.Column('unit', sa.String(20), nullable=True),
        sa.Column('unit_multiplier', sa.Numeric(10, 4), nullable=True),
        sa.Column('free_allowance', sa.Integer(), nullable=True),
        sa.Column('free_allowance_period', sa.String(10), nullable=True),
        sa.Column('volume_tiers', sa.JSON(), nullable=True),
        sa.Column('allow_overage', sa.Boolean(), nullable=True),
        sa.Column('overage_limit', sa.Integer(), nullable=True),
        sa.Column('overage_period', sa.String(10), nullable=True),
        sa.Column('overage_cost', sa.Numeric(15, 4), nullable=True),
        sa.Column('is_inherited', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_by', sa.UUID(), nullable=True),
        sa.Column('updated_by', sa.UUID(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_credit_configs')),
    )
    op.create_index(op.f('ix_credit_configs_tenant_id'), 'credit_configs', ['tenant_id'])
    op.create_index(
        'ix_credit_configs_lookup', 'credit_configs', ['config_level', 'code', 'tenant_id', 'is_active']
    )
    op.create_index(
        'uq_credit_configs_active_tenant',
        'credit_configs',
        ['config_level', 'code', 'tenant_id'],
        unique=True,
        postgresql_where=sa.text('is_active AND tenant_id IS NOT NULL'),
    )
    # NULL tenant ids never collide, so global rows need an index of their own
    op.create_index(
        'uq_credit_configs_active_global',
        'credit_configs',
        ['config_level', 'code'],
        unique=True,
        postgresql_where=sa.text('is_active AND tenant_id IS NULL'),
    )

    # credit_purchases: payment attempts
    op.create_table(
        'credit_purchases',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=False),
        sa.Column('entity_type', sa.String(50), nullable=False, server_default='organization'),
        sa.Column('entity_id', sa.UUID(), nullable=False),
        sa.Column('credit_amount', sa.Numeric(15, 4), nullable=False),
        sa.Column('unit_price', sa.Numeric(10, 4), nullable=False),
        sa.Column('total_amount', sa.Numeric(12, 4), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('payment_method', sa.String(50), nullable=False),
        sa.Column('payment_reference', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('requested_by', sa.UUID(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('transaction_id', sa.UUID(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_credit_purchases')),
    )
    op.create_index(op.f('ix_credit_purchases_tenant_id'), 'credit_purchases', ['tenant_id'])
    op.create_index(op.f('ix_credit_purchases_payment_reference'), 'credit_purchases', ['payment_reference'])

    # credit_usage: per-action counters for free allowance, overage and idempotency
    op.create_table(
        'credit_usage',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=False),
        sa.Column('entity_id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=True),
        sa.Column('operation_code', sa.String(255), nullable=False),
        sa.Column('operation_id', sa.String(255), nullable=True),
        sa.Column('units', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('free_units', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('overage_units', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('credits_charged', sa.Numeric(15, 4), nullable=False, server_default='0'),
        sa.Column('requested_cost', sa.Numeric(15, 4), nullable=True),
        sa.Column('config_source', sa.String(50), nullable=False),
        sa.Column('remaining_credits', sa.Numeric(15, 4), nullable=False),
        sa.Column('transaction_id', sa.UUID(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_credit_usage')),
        sa.UniqueConstraint('tenant_id', 'entity_id', 'operation_id', name='uq_credit_usage_operation'),
    )
    op.create_index(
        'ix_credit_usage_counter', 'credit_usage', ['tenant_id', 'entity_id', 'operation_code', 'created_at']
    )

    # credit_grants: expiring allocations swept by the expiry task
    op.create_table(
        'credit_grants',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=False),
        sa.Column('entity_id', sa.UUID(), nullable=False),
        sa.Column('allocated_credits', sa.Numeric(15, 4), nullable=False),
        sa.Column('used_credits', sa.Numeric(15, 4), nullable=False, server_default='0'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_expired', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('expired_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expired_credits', sa.Numeric(15, 4), nullable=False, server_default='0'),
        sa.Column('source', sa.String(50), nullable=False),
        sa.Column('source_id', sa.String(255), nullable=True),
        sa.Column('transaction_id', sa.UUID(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_credit_grants')),
    )
    op.create_index(op.f('ix_credit_grants_tenant_id'), 'credit_grants', ['tenant_id'])
    op.create_index('ix_credit_grants_pending_expiry', 'credit_grants', ['is_expired', 'expires_at'])


def downgrade() -> None:
    op.drop_index('ix_credit_grants_pending_expiry', table_name='credit_grants')
    op.drop_index(op.f('ix_credit_grants_tenant_id'), table_name='credit_grants')
    op.drop_table('credit_grants')
    op.drop_index('ix_credit_usage_counter', table_name='credit_usage')
    op.drop_table('credit_usage')
    op.drop_index(op.f('ix_credit_purchases_payment_reference'), table_name='credit_purchases')
    op.drop_index(op.f('ix_credit_purchases_tenant_id'), table_name='credit_purchases')
    op.drop_table('credit_purchases')
    op.drop_index('uq_credit_configs_active_global', table_name='credit_configs')
    op.drop_index('uq_credit_configs_active_tenant', table_name='credit_configs')
    op.drop_index('ix_credit_configs_lookup', table_name='credit_configs')
    op.drop_index(op.f('ix_credit_configs_tenant_id'), table_name='credit_configs')
    op.drop_table('credit_configs')
    op.drop_index('ix_credit_transactions_entity_operation', table_name='credit_transactions')
    op.drop_index('ix_credit_transactions_tenant_created', table_name='credit_transactions')
    op.drop_index(op.f('ix_credit_transactions_correlation_id'), table_name='credit_transactions')
    op.drop_index(op.f('ix_credit_transactions_transaction_type'), table_name='credit_transactions')
    op.drop_index(op.f('ix_credit_transactions_tenant_id'), table_name='credit_transactions')
    op.drop_table('credit_transactions')
    op.drop_index(op.f('ix_credit_balances_tenant_id'), table_name='credit_balances')
    op.drop_table('credit_balances')
