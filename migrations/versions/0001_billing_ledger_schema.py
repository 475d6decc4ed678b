"""billing ledger schema

Revision ID: 0001_billing_ledger
Revises:
Create Date: 2026-10-19 10:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_billing_ledger'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade():
    op.create_table(
        'organizations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('billing_email', sa.String(length=255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False, unique=True),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('org_id', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ondelete='RESTRICT'),
    )
    op.create_index('ix_users_org_id', 'users', ['org_id'])

    op.create_table(
        'org_memberships',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('role', sa.String(length=20), nullable=False, server_default='member'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('org_id', 'user_id', name='uq_org_memberships_org_user'),
        sa.CheckConstraint("role IN ('owner','admin','member')", name='ck_org_memberships_role_valid'),
    )
    op.create_index('ix_org_memberships_org_id', 'org_memberships', ['org_id'])
    op.create_index('ix_org_memberships_user_id', 'org_memberships', ['user_id'])

    op.create_table(
        'organization_hotels',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('organization_id', sa.Integer(), nullable=False),
        sa.Column('hotel_name', sa.String(length=255), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_organization_hotels_organization_id', 'organization_hotels', ['organization_id'])

    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('category', sa.String(length=64), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_products_code', 'products', ['code'], unique=True)

    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(length=32), nullable=False, unique=True),
        sa.Column('name', sa.String(length=64), nullable=False),
        sa.Column('rank', sa.Integer(), nullable=False),
        sa.Column('monthly_credits', sa.Integer(), nullable=False),
        sa.Column('price_major_units', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_subscription_plans_rank', 'subscription_plans', ['rank'])

    op.create_table(
        'organization_subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('organization_id', sa.Integer(), nullable=False),
        sa.Column('plan_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='active'),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('stripe_customer_id', sa.String(length=64), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(length=64), nullable=True),
        sa.Column('payment_failed_count', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('last_payment_attempt', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['plan_id'], ['subscription_plans.id'], ondelete='RESTRICT'),
        sa.CheckConstraint(
            "status IN ('active','past_due','suspended','cancelled','expired')",
            name='ck_organization_subscriptions_status_valid',
        ),
    )
    op.create_index('ix_organization_subscriptions_organization_id', 'organization_subscriptions', ['organization_id'])
    op.create_index('ix_organization_subscriptions_status', 'organization_subscriptions', ['status'])
    op.create_index('ix_organization_subscriptions_expires_at', 'organization_subscriptions', ['expires_at'])
    op.create_index('ix_organization_subscriptions_stripe_customer_id', 'organization_subscriptions', ['stripe_customer_id'])
    op.create_index(
        'ix_organization_subscriptions_stripe_subscription_id',
        'organization_subscriptions', ['stripe_subscription_id'], unique=True,
    )
    op.create_index(
        'uq_organization_subscriptions_one_active',
        'organization_subscriptions', ['organization_id'], unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )

    op.create_table(
        'billing_customers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('stripe_customer_id', sa.String(length=64), nullable=False),
        sa.Column('billing_email', sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ondelete='RESTRICT'),
    )
    op.create_index('ix_billing_customers_org_id', 'billing_customers', ['org_id'])
    op.create_index('ix_billing_customers_stripe_customer_id', 'billing_customers', ['stripe_customer_id'], unique=True)

    op.create_table(
        'billing_event_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('stripe_event_id', sa.String(length=255), nullable=False),
        sa.Column('type', sa.String(length=80), nullable=False),
        sa.Column('signature_valid', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('retries', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('notes', sa.String(length=255), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_billing_event_logs_stripe_event_id', 'billing_event_logs', ['stripe_event_id'], unique=True)
    op.create_index('ix_billing_event_logs_type', 'billing_event_logs', ['type'])

    op.create_table(
        'ledger_transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('principal_id', sa.String(length=64), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('balance_before', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=40), nullable=False),
        sa.Column('reference_id', sa.String(length=255), nullable=True, unique=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('meta', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint('balance_after = balance_before + amount', name='ck_ledger_transactions_arithmetic'),
        sa.CheckConstraint('balance_after >= 0', name='ck_ledger_transactions_non_negative'),
    )
    op.create_index('ix_ledger_transactions_principal_id', 'ledger_transactions', ['principal_id'])
    op.create_index('ix_ledger_transactions_type', 'ledger_transactions', ['type'])
    op.create_index('ix_ledger_transactions_created_at', 'ledger_transactions', ['created_at'])

    op.create_table(
        'ledger_balances',
        sa.Column('principal_id', sa.String(length=64), primary_key=True),
        sa.Column('balance', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('version', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('last_transaction_id', sa.Integer(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['last_transaction_id'], ['ledger_transactions.id']),
        sa.CheckConstraint('balance >= 0', name='ck_ledger_balances_non_negative'),
    )

    op.create_table(
        'hotel_product_activations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('hotel_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='inactive'),
        sa.Column('activated_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['hotel_id'], ['organization_hotels.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('hotel_id', 'product_id', name='uq_hotel_product_activations_hotel_product'),
        sa.CheckConstraint(
            "status IN ('active','paused','inactive')",
            name='ck_hotel_product_activations_status_valid',
        ),
    )
    op.create_index('ix_hotel_product_activations_hotel_id', 'hotel_product_activations', ['hotel_id'])


def downgrade():
    op.drop_table('hotel_product_activations')
    op.drop_table('ledger_balances')
    op.drop_table('ledger_transactions')
    op.drop_table('billing_event_logs')
    op.drop_table('billing_customers')
    op.drop_table('organization_subscriptions')
    op.drop_table('subscription_plans')
    op.drop_table('products')
    op.drop_table('organization_hotels')
    op.drop_table('org_memberships')
    op.drop_table('users')
    op.drop_table('organizations')
