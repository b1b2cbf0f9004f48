"""billing core: users, plan catalog, subscriptions, payments, audit events

Revision ID: 5b1e0c9d2a41
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '5b1e0c9d2a41'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('username', sa.String(length=120), nullable=True),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column('subscription_tier', sa.String(length=20), nullable=False, server_default=sa.text("'free'")),
        sa.Column('subscription_expires_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=64), nullable=False),
        sa.Column('display_name', sa.String(length=120), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default=sa.text("'ZAR'")),
        sa.Column('billing_period', sa.String(length=16), nullable=False),
        sa.Column('trial_days', sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column('google_play_product_id', sa.String(length=120), nullable=True),
        sa.Column('apple_product_id', sa.String(length=120), nullable=True),
        sa.Column('features', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("billing_period in ('monthly', 'yearly')", name='ck_subscription_plans_period'),
        sa.CheckConstraint('price >= 0', name='ck_subscription_plans_price_nonneg'),
    )
    op.create_index('ix_subscription_plans_name', 'subscription_plans', ['name'], unique=True)
    op.create_index('ix_subscription_plans_google_play_product_id', 'subscription_plans', ['google_play_product_id'])
    op.create_index('ix_subscription_plans_apple_product_id', 'subscription_plans', ['apple_product_id'])

    op.create_table(
        'user_subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('plan_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default=sa.text("'trial'")),
        sa.Column('trial_start_date', sa.DateTime(), nullable=True),
        sa.Column('trial_end_date', sa.DateTime(), nullable=True),
        sa.Column('subscription_start_date', sa.DateTime(), nullable=True),
        sa.Column('next_billing_date', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('total_paid', sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column('last_payment_date', sa.DateTime(), nullable=True),
        sa.Column('paystack_reference', sa.String(length=120), nullable=True),
        sa.Column('paystack_customer_code', sa.String(length=120), nullable=True),
        sa.Column('google_play_purchase_token', sa.String(length=512), nullable=True),
        sa.Column('google_play_order_id', sa.String(length=120), nullable=True),
        sa.Column('google_play_subscription_id', sa.String(length=120), nullable=True),
        sa.Column('apple_transaction_id', sa.String(length=120), nullable=True),
        sa.Column('apple_original_transaction_id', sa.String(length=120), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(['plan_id'], ['subscription_plans.id'], ondelete="RESTRICT"),
        sa.UniqueConstraint('user_id', name='uq_user_subscriptions_user_id'),
        sa.CheckConstraint('total_paid >= 0', name='ck_user_subscriptions_total_paid_nonneg'),
    )
    op.create_index('ix_user_subscriptions_user_id', 'user_subscriptions', ['user_id'])
    op.create_index('ix_user_subscriptions_status', 'user_subscriptions', ['status'])
    op.create_index('ix_user_subscriptions_next_billing_date', 'user_subscriptions', ['next_billing_date'])

    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('subscription_id', sa.Integer(), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('platform', sa.String(length=32), nullable=False),
        sa.Column('platform_transaction_id', sa.String(length=512), nullable=False),
        sa.Column('platform_order_id', sa.String(length=120), nullable=True),
        sa.Column('platform_subscription_id', sa.String(length=120), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(['subscription_id'], ['user_subscriptions.id']),
        # Idempotency key for reconciliation; ON CONFLICT targets these columns
        sa.UniqueConstraint('platform', 'platform_transaction_id', name='uq_payment_transactions_platform_ref'),
    )
    op.create_index('ix_payment_transactions_user_id', 'payment_transactions', ['user_id'])
    op.create_index('ix_payment_transactions_subscription_id', 'payment_transactions', ['subscription_id'])

    op.create_table(
        'billing_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('event_type', sa.String(length=80), nullable=False),
        sa.Column('event_data', sa.JSON(), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column('processing_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
    )
    op.create_index('ix_billing_events_user_id', 'billing_events', ['user_id'])
    op.create_index('ix_billing_events_event_type', 'billing_events', ['event_type'])
    op.create_index('ix_billing_events_created_at', 'billing_events', ['created_at'])


def downgrade():
    op.drop_index('ix_billing_events_created_at', table_name='billing_events')
    op.drop_index('ix_billing_events_event_type', table_name='billing_events')
    op.drop_index('ix_billing_events_user_id', table_name='billing_events')
    op.drop_table('billing_events')

    op.drop_index('ix_payment_transactions_subscription_id', table_name='payment_transactions')
    op.drop_index('ix_payment_transactions_user_id', table_name='payment_transactions')
    op.drop_table('payment_transactions')

    op.drop_index('ix_user_subscriptions_next_billing_date', table_name='user_subscriptions')
    op.drop_index('ix_user_subscriptions_status', table_name='user_subscriptions')
    op.drop_index('ix_user_subscriptions_user_id', table_name='user_subscriptions')
    op.drop_table('user_subscriptions')

    op.drop_index('ix_subscription_plans_apple_product_id', table_name='subscription_plans')
    op.drop_index('ix_subscription_plans_google_play_product_id', table_name='subscription_plans')
    op.drop_index('ix_subscription_plans_name', table_name='subscription_plans')
    op.drop_table('subscription_plans')

    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')
