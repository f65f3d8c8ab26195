"""Initial schema: credit balances, ledger, purchases, proofs, coupons, packages, subscriptions, invoices, tax, audit

Revision ID: 5c2e8a41d7b0
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5c2e8a41d7b0'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _base_columns() -> list[sa.Column]:
    return [
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    ]


def _base_indexes(table: str) -> None:
    op.create_index(op.f(f'ix_{table}_id'), table, ['id'])
    op.create_index(op.f(f'ix_{table}_created_at'), table, ['created_at'])


def upgrade() -> None:
    """Create all tables for the credit engine."""
    # Enums are stored by value in VARCHAR(32) columns

    # 1. Credit balances (one row per account)
    op.create_table(
        'credit_balances',
        *_base_columns(),
        sa.Column('account_id', sa.Uuid(), nullable=False),
        sa.Column('balance', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('total_purchased', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('total_used', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('low_credit_threshold', sa.Numeric(14, 2), nullable=False, server_default='10'),
        sa.Column('low_credit_notified', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('auto_topup_enabled', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('auto_topup_amount', sa.Integer(), nullable=True),
        sa.Column('auto_topup_threshold', sa.Numeric(14, 2), nullable=True),
        sa.Column('default_payment_channel', sa.String(length=32), nullable=True),
        sa.Column('default_payment_method_ref', sa.String(), nullable=True),
        sa.Column('services_paused', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('allow_negative_balance', sa.Boolean(), nullable=False, server_default='false'),
        sa.PrimaryKeyConstraint('id'),
    )
    _base_indexes('credit_balances')
    op.create_index(op.f('ix_credit_balances_account_id'), 'credit_balances', ['account_id'], unique=True)

    # 2. Ledger entries (append-only)
    op.create_table(
        'ledger_entries',
        *_base_columns(),
        sa.Column('account_id', sa.Uuid(), nullable=False),
        sa.Column('type', sa.String(length=32), nullable=False),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('balance_before', sa.Numeric(14, 2), nullable=False),
        sa.Column('balance_after', sa.Numeric(14, 2), nullable=False),
        sa.Column('description', sa.String(), nullable=False),
        sa.Column('purchase_id', sa.Uuid(), nullable=True),
        sa.Column('subscription_id', sa.Uuid(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('purchase_id', 'type', name='uq_ledger_entries_purchase_type'),
    )
    _base_indexes('ledger_entries')
    op.create_index(op.f('ix_ledger_entries_account_id'), 'ledger_entries', ['account_id'])
    op.create_index(op.f('ix_ledger_entries_type'), 'ledger_entries', ['type'])
    op.create_index(op.f('ix_ledger_entries_purchase_id'), 'ledger_entries', ['purchase_id'])

    # 3. Coupons
    op.create_table(
        'coupons',
        *_base_columns(),
        sa.Column('code', sa.String(), nullable=False),
        sa.Column('description', sa.String(), nullable=True),
        sa.Column('discount_type', sa.String(length=32), nullable=False),
        sa.Column('discount_value', sa.Numeric(12, 2), nullable=False),
        sa.Column('max_discount_amount', sa.Integer(), nullable=True),
        sa.Column('min_order_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('applicable_to', sa.String(length=32), nullable=False, server_default='all'),
        sa.Column('valid_from', sa.DateTime(), nullable=True),
        sa.Column('valid_until', sa.DateTime(), nullable=True),
        sa.Column('max_uses', sa.Integer(), nullable=True),
        sa.Column('times_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('single_use', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.PrimaryKeyConstraint('id'),
    )
    _base_indexes('coupons')
    op.create_index(op.f('ix_coupons_code'), 'coupons', ['code'], unique=True)
    op.create_index(op.f('ix_coupons_is_active'), 'coupons', ['is_active'])

    # 4. Packages
    op.create_table(
        'packages',
        *_base_columns(),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('tier', sa.String(length=32), nullable=False),
        sa.Column('monthly_price', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('yearly_price', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('credits_included', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.PrimaryKeyConstraint('id'),
    )
    _base_indexes('packages')
    op.create_index(op.f('ix_packages_tier'), 'packages', ['tier'])

    # 5. Purchases (depends on coupons, packages)
    op.create_table(
        'purchases',
        *_base_columns(),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('purchase_type', sa.String(length=32), nullable=False),
        sa.Column('source', sa.String(length=32), nullable=False, server_default='checkout'),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('credits_amount', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('credits_rate', sa.Numeric(10, 4), nullable=True),
        sa.Column('subtotal', sa.Integer(), nullable=False),
        sa.Column('discount_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tax_rate', sa.Numeric(6, 4), nullable=True),
        sa.Column('tax_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('coupon_id', sa.Uuid(), nullable=True),
        sa.Column('coupon_code', sa.String(), nullable=True),
        sa.Column('package_id', sa.Uuid(), nullable=True),
        sa.Column('billing_cycle', sa.String(length=16), nullable=True),
        sa.Column('payment_method', sa.String(length=32), nullable=True),
        sa.Column('payment_status', sa.String(length=32), nullable=False, server_default='pending'),
        sa.Column('payment_provider_id', sa.String(), nullable=True),
        sa.Column('payment_provider_response', sa.JSON(), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('processing_started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False, server_default='{}'),
        sa.ForeignKeyConstraint(['coupon_id'], ['coupons.id']),
        sa.ForeignKeyConstraint(['package_id'], ['packages.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    _base_indexes('purchases')
    op.create_index(op.f('ix_purchases_user_id'), 'purchases', ['user_id'])
    op.create_index(op.f('ix_purchases_payment_status'), 'purchases', ['payment_status'])
    op.create_index(op.f('ix_purchases_payment_provider_id'), 'purchases', ['payment_provider_id'])
    # Reconciliation sweep: processing purchases by age
    op.create_index(
        'ix_purchases_status_processing_started',
        'purchases',
        ['payment_status', 'processing_started_at'],
    )

    # 6. Payment proofs (depends on purchases)
    op.create_table(
        'payment_proofs',
        *_base_columns(),
        sa.Column('purchase_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('file_url', sa.String(), nullable=False),
        sa.Column('file_name', sa.String(), nullable=True),
        sa.Column('file_size', sa.Integer(), nullable=True),
        sa.Column('file_type', sa.String(), nullable=True),
        sa.Column('transaction_reference', sa.String(), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending'),
        sa.Column('reviewed_by', sa.String(), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['purchase_id'], ['purchases.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    _base_indexes('payment_proofs')
    op.create_index(op.f('ix_payment_proofs_purchase_id'), 'payment_proofs', ['purchase_id'])
    op.create_index(op.f('ix_payment_proofs_user_id'), 'payment_proofs', ['user_id'])
    op.create_index(op.f('ix_payment_proofs_status'), 'payment_proofs', ['status'])

    # 7. Coupon redemptions (depends on coupons, purchases)
    op.create_table(
        'coupon_redemptions',
        *_base_columns(),
        sa.Column('coupon_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('purchase_id', sa.Uuid(), nullable=True),
        sa.Column('subscription_id', sa.Uuid(), nullable=True),
        sa.Column('discount_amount', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['coupon_id'], ['coupons.id']),
        sa.ForeignKeyConstraint(['purchase_id'], ['purchases.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('purchase_id'),
    )
    _base_indexes('coupon_redemptions')
    op.create_index(op.f('ix_coupon_redemptions_coupon_id'), 'coupon_redemptions', ['coupon_id'])
    op.create_index(op.f('ix_coupon_redemptions_user_id'), 'coupon_redemptions', ['user_id'])

    # 8. Subscriptions (depends on packages, purchases)
    op.create_table(
        'subscriptions',
        *_base_columns(),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('package_id', sa.Uuid(), nullable=False),
        sa.Column('purchase_id', sa.Uuid(), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='active'),
        sa.Column('billing_cycle', sa.String(length=32), nullable=False, server_default='monthly'),
        sa.Column('current_period_start', sa.DateTime(), nullable=False),
        sa.Column('current_period_end', sa.DateTime(), nullable=False),
        sa.Column('auto_renew', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['package_id'], ['packages.id']),
        sa.ForeignKeyConstraint(['purchase_id'], ['purchases.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    _base_indexes('subscriptions')
    op.create_index(op.f('ix_subscriptions_user_id'), 'subscriptions', ['user_id'])
    op.create_index(
        'uq_subscriptions_one_active_per_user',
        'subscriptions',
        ['user_id'],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    # 9. Invoices
    op.create_table(
        'invoices',
        *_base_columns(),
        sa.Column('invoice_number', sa.String(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('purchase_id', sa.Uuid(), nullable=True),
        sa.Column('subscription_id', sa.Uuid(), nullable=True),
        sa.Column('invoice_date', sa.Date(), nullable=False),
        sa.Column('due_date', sa.Date(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('subtotal', sa.Integer(), nullable=False),
        sa.Column('discount_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('discount_code', sa.String(), nullable=True),
        sa.Column('tax_rate', sa.Numeric(6, 4), nullable=False, server_default='0'),
        sa.Column('tax_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_amount', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='paid'),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('items', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('billing_address', sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('purchase_id'),
    )
    _base_indexes('invoices')
    op.create_index(op.f('ix_invoices_invoice_number'), 'invoices', ['invoice_number'], unique=True)
    op.create_index(op.f('ix_invoices_user_id'), 'invoices', ['user_id'])
    op.create_index(op.f('ix_invoices_subscription_id'), 'invoices', ['subscription_id'])
    op.create_index(op.f('ix_invoices_status'), 'invoices', ['status'])

    # 10. Invoice sequences
    op.create_table(
        'invoice_sequences',
        *_base_columns(),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('last_number', sa.Integer(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id'),
    )
    _base_indexes('invoice_sequences')

    # 11. Tax configurations
    op.create_table(
        'tax_configurations',
        *_base_columns(),
        sa.Column('jurisdiction', sa.String(), nullable=True),
        sa.Column('tax_rate', sa.Numeric(6, 4), nullable=False),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.PrimaryKeyConstraint('id'),
    )
    _base_indexes('tax_configurations')
    op.create_index(op.f('ix_tax_configurations_jurisdiction'), 'tax_configurations', ['jurisdiction'])

    # 12. Audit logs
    op.create_table(
        'audit_logs',
        *_base_columns(),
        sa.Column('entity_type', sa.String(), nullable=False),
        sa.Column('entity_id', sa.Uuid(), nullable=False),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=True),
        sa.Column('changes', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('request_id', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    _base_indexes('audit_logs')
    op.create_index(op.f('ix_audit_logs_entity_type'), 'audit_logs', ['entity_type'])
    op.create_index(op.f('ix_audit_logs_entity_id'), 'audit_logs', ['entity_id'])


def downgrade() -> None:
    """Drop all tables in reverse dependency order."""
    op.drop_table('audit_logs')
    op.drop_table('tax_configurations')
    op.drop_table('invoice_sequences')
    op.drop_table('invoices')
    op.drop_table('subscriptions')
    op.drop_table('coupon_redemptions')
    op.drop_table('payment_proofs')
    op.drop_table('purchases')
    op.drop_table('packages')
    op.drop_table('coupons')
    op.drop_table('ledger_entries')
    op.drop_table('credit_balances')
