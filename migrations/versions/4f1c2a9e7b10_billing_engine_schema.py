"""billing engine schema: subscriptions, items, invoices, payment methods, webhook log

Revision ID: 4f1c2a9e7b10
Revises:
Create Date: 2026-10-19 09:12:31.418205

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '4f1c2a9e7b10'
down_revision = None
branch_labels = None
depends_on = None

_TS = sa.DateTime(timezone=True)
_JSON = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql')


def upgrade():
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.String(length=64), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('provider_subscription_id', sa.String(length=128), nullable=True),
        sa.Column('provider_customer_id', sa.String(length=128), nullable=True),
        sa.Column('checkout_url', sa.String(length=1024), nullable=True),
        sa.Column('plan_id', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=32), server_default=sa.text("'incomplete'"), nullable=False),
        sa.Column('seats', sa.Integer(), server_default=sa.text('1'), nullable=False),
        sa.Column('amount', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('currency', sa.String(length=3), server_default=sa.text("'usd'"), nullable=False),
        sa.Column('interval', sa.String(length=8), server_default=sa.text("'month'"), nullable=False),
        sa.Column('current_period_start', _TS, nullable=True),
        sa.Column('current_period_end', _TS, nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('canceled_at', _TS, nullable=True),
        sa.Column('cancel_reason', sa.String(length=255), nullable=True),
        sa.Column('grace_period_ends_at', _TS, nullable=True),
        sa.Column('pending_plan_id', sa.String(length=64), nullable=True),
        sa.Column('pending_seats', sa.Integer(), nullable=True),
        sa.Column('pending_proration_amount', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('unbilled_proration_amount', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('pending_operation', sa.String(length=64), nullable=True),
        sa.Column('pending_operation_at', _TS, nullable=True),
        sa.Column('created_at', _TS, nullable=False),
        sa.Column('updated_at', _TS, nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('subscriptions', schema=None) as batch_op:
        batch_op.create_index('ix_subscriptions_org_id', ['org_id'], unique=False)
        batch_op.create_index('ix_subscriptions_provider', ['provider'], unique=False)
        batch_op.create_index('ix_subscriptions_provider_subscription_id', ['provider_subscription_id'], unique=True)
        batch_op.create_index('ix_subscriptions_plan_id', ['plan_id'], unique=False)
        batch_op.create_index('ix_subscriptions_status', ['status'], unique=False)
        batch_op.create_index('ix_subscriptions_current_period_end', ['current_period_end'], unique=False)
        batch_op.create_index('ix_subscriptions_grace_period_ends_at', ['grace_period_ends_at'], unique=False)
        # One live subscription per organization
        batch_op.create_index(
            'uq_subscriptions_org_live',
            ['org_id'],
            unique=True,
            postgresql_where=sa.text("status IN ('active','trialing')"),
            sqlite_where=sa.text("status IN ('active','trialing')"),
        )

    op.create_table(
        'subscription_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('subscription_id', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('provider_item_id', sa.String(length=128), nullable=True),
        sa.Column('price_id', sa.String(length=128), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_amount', sa.Integer(), nullable=False),
        sa.Column('created_at', _TS, nullable=False),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('subscription_items', schema=None) as batch_op:
        batch_op.create_index('ix_subscription_items_subscription_id', ['subscription_id'], unique=False)

    op.create_table(
        'invoices',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('subscription_id', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('provider_invoice_id', sa.String(length=128), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('amount_total', sa.Integer(), nullable=False),
        sa.Column('amount_paid', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('reason', sa.String(length=32), nullable=True),
        sa.Column('due_at', _TS, nullable=True),
        sa.Column('paid_at', _TS, nullable=True),
        sa.Column('created_at', _TS, nullable=False),
        sa.Column('updated_at', _TS, nullable=False),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('invoices', schema=None) as batch_op:
        batch_op.create_index('ix_invoices_subscription_id', ['subscription_id'], unique=False)
        batch_op.create_index('ix_invoices_provider_invoice_id', ['provider_invoice_id'], unique=True)

    op.create_table(
        'payment_methods',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.String(length=64), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('provider_payment_method_id', sa.String(length=128), nullable=False),
        sa.Column('type', sa.String(length=32), nullable=False),
        sa.Column('brand', sa.String(length=32), nullable=True),
        sa.Column('last4', sa.String(length=4), nullable=True),
        sa.Column('exp_month', sa.Integer(), nullable=True),
        sa.Column('exp_year', sa.Integer(), nullable=True),
        sa.Column('is_default', sa.Boolean(), nullable=False),
        sa.Column('created_at', _TS, nullable=False),
        sa.Column('updated_at', _TS, nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'provider_payment_method_id', name='uq_payment_methods_provider_pm'),
    )
    with op.batch_alter_table('payment_methods', schema=None) as batch_op:
        batch_op.create_index('ix_payment_methods_org_id', ['org_id'], unique=False)
        batch_op.create_index(
            'uq_payment_methods_org_default',
            ['org_id'],
            unique=True,
            postgresql_where=sa.text('is_default'),
            sqlite_where=sa.text('is_default = 1'),
        )

    op.create_table(
        'billing_customers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.String(length=64), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('provider_customer_id', sa.String(length=128), nullable=False),
        sa.Column('billing_email', sa.String(length=255), nullable=True),
        sa.Column('created_at', _TS, nullable=False),
        sa.Column('updated_at', _TS, nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'provider_customer_id', name='uq_billing_customers_provider_customer'),
        sa.UniqueConstraint('org_id', 'provider', name='uq_billing_customers_org_provider'),
    )
    with op.batch_alter_table('billing_customers', schema=None) as batch_op:
        batch_op.create_index('ix_billing_customers_org_id', ['org_id'], unique=False)

    op.create_table(
        'org_memberships',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('role', sa.String(length=20), nullable=False),
        sa.Column('removed_at', _TS, nullable=True),
        sa.Column('created_at', _TS, nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('org_id', 'user_id', name='uq_org_memberships_org_user'),
    )
    with op.batch_alter_table('org_memberships', schema=None) as batch_op:
        batch_op.create_index('ix_org_memberships_org_id', ['org_id'], unique=False)

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('provider_event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=80), nullable=False),
        sa.Column('payload', _JSON, nullable=False),
        sa.Column('subscription_ref', sa.String(length=128), nullable=True),
        sa.Column('processed', sa.Boolean(), nullable=False),
        sa.Column('processed_at', _TS, nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('next_attempt_at', _TS, nullable=True),
        sa.Column('last_error', sa.String(length=255), nullable=True),
        sa.Column('dead_lettered_at', _TS, nullable=True),
        sa.Column('created_at', _TS, nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'provider_event_id', name='uq_webhook_events_provider_event'),
    )
    with op.batch_alter_table('webhook_events', schema=None) as batch_op:
        batch_op.create_index('ix_webhook_events_event_type', ['event_type'], unique=False)
        batch_op.create_index('ix_webhook_events_subscription_ref', ['subscription_ref'], unique=False)
        batch_op.create_index('ix_webhook_events_processed', ['processed'], unique=False)
        batch_op.create_index('ix_webhook_events_next_attempt_at', ['next_attempt_at'], unique=False)

    op.create_table(
        'purchases',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=True),
        sa.Column('product_id', sa.String(length=64), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('provider_customer_id', sa.String(length=128), nullable=False),
        sa.Column('provider_invoice_id', sa.String(length=128), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('paid_at', _TS, nullable=True),
        sa.Column('created_at', _TS, nullable=False),
        sa.Column('updated_at', _TS, nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('purchases', schema=None) as batch_op:
        batch_op.create_index('ix_purchases_org_id', ['org_id'], unique=False)
        batch_op.create_index('ix_purchases_provider_invoice_id', ['provider_invoice_id'], unique=True)


def downgrade():
    with op.batch_alter_table('purchases', schema=None) as batch_op:
        batch_op.drop_index('ix_purchases_provider_invoice_id')
        batch_op.drop_index('ix_purchases_org_id')
    op.drop_table('purchases')

    with op.batch_alter_table('webhook_events', schema=None) as batch_op:
        batch_op.drop_index('ix_webhook_events_next_attempt_at')
        batch_op.drop_index('ix_webhook_events_processed')
        batch_op.drop_index('ix_webhook_events_subscription_ref')
        batch_op.drop_index('ix_webhook_events_event_type')
    op.drop_table('webhook_events')

    with op.batch_alter_table('org_memberships', schema=None) as batch_op:
        batch_op.drop_index('ix_org_memberships_org_id')
    op.drop_table('org_memberships')

    with op.batch_alter_table('billing_customers', schema=None) as batch_op:
        batch_op.drop_index('ix_billing_customers_org_id')
    op.drop_table('billing_customers')

    with op.batch_alter_table('payment_methods', schema=None) as batch_op:
        batch_op.drop_index('uq_payment_methods_org_default')
        batch_op.drop_index('ix_payment_methods_org_id')
    op.drop_table('payment_methods')

    with op.batch_alter_table('invoices', schema=None) as batch_op:
        batch_op.drop_index('ix_invoices_provider_invoice_id')
        batch_op.drop_index('ix_invoices_subscription_id')
    op.drop_table('invoices')

    with op.batch_alter_table('subscription_items', schema=None) as batch_op:
        batch_op.drop_index('ix_subscription_items_subscription_id')
    op.drop_table('subscription_items')

    with op.batch_alter_table('subscriptions', schema=None) as batch_op:
        batch_op.drop_index('uq_subscriptions_org_live')
        batch_op.drop_index('ix_subscriptions_grace_period_ends_at')
        batch_op.drop_index('ix_subscriptions_current_period_end')
        batch_op.drop_index('ix_subscriptions_status')
        batch_op.drop_index('ix_subscriptions_plan_id')
        batch_op.drop_index('ix_subscriptions_provider_subscription_id')
        batch_op.drop_index('ix_subscriptions_provider')
        batch_op.drop_index('ix_subscriptions_org_id')
    op.drop_table('subscriptions')
