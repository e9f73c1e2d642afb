"""Create escrow ledger tables

This migration creates:
1. users
2. offers
3. contracts and contract_audit_logs
4. job_payments
5. creator_balances
6. withdrawal_methods and withdrawals
7. webhook_events
8. subscription_plans and subscriptions
9. notifications

Revision ID: create_escrow_ledger_tables_001
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = 'create_escrow_ledger_tables_001'
down_revision = None
branch_labels = None
depends_on = None


USER_TYPE = sa.Enum('brand', 'creator', 'admin', name='usertype')
OFFER_STATUS = sa.Enum('pending', 'accepted', 'rejected', 'cancelled', 'expired', name='offerstatusdb')
CONTRACT_STATUS = sa.Enum('pending', 'active', 'completed', 'cancelled', 'disputed', name='contractstatusdb')
CONTRACT_WORKFLOW = sa.Enum(
    'awaiting_funding', 'active', 'waiting_review', 'cancelling', 'payment_available', 'cancelled', 'terminated',
    'disputed',
    name='contractworkflowdb',
)
PAYMENT_STATUS = sa.Enum('pending', 'completed', 'failed', 'refunded', name='paymentstatusdb')
WITHDRAWAL_STATUS = sa.Enum('pending', 'processing', 'completed', 'failed', 'cancelled', name='withdrawalstatusdb')
WEBHOOK_STATUS = sa.Enum('processing', 'processed', 'failed', name='webhookeventstatusdb')
SUBSCRIPTION_STATUS = sa.Enum('active', 'pending', 'cancelled', 'expired', name='subscriptionstatusdb')


def upgrade():
    # 1. Users
    op.create_table('users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255)),
        sa.Column('user_type', USER_TYPE, nullable=False, server_default='brand'),
        sa.Column('stripe_customer_id', sa.String(255), unique=True),
        sa.Column('stripe_account_id', sa.String(255)),
        sa.Column('stripe_payment_method_id', sa.String(255)),
        sa.Column('is_premium', sa.Boolean, server_default=sa.false()),
        sa.Column('premium_expires_at', sa.DateTime),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    # 2. Offers
    op.create_table('offers',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('brand_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('creator_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('campaign_id', sa.String(36)),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('requirements', sa.JSON),
        sa.Column('budget', sa.Integer, nullable=False),
        sa.Column('estimated_days', sa.Integer, nullable=False),
        sa.Column('status', OFFER_STATUS, nullable=False, server_default='pending'),
        sa.Column('expires_at', sa.DateTime, nullable=False),
        sa.Column('accepted_at', sa.DateTime),
        sa.Column('rejected_at', sa.DateTime),
        sa.Column('rejection_reason', sa.Text),
        sa.Column('cancelled_at', sa.DateTime),
        sa.Column('created_at', sa.DateTime),
        sa.Column('updated_at', sa.DateTime),
    )
    op.create_index('ix_offers_brand_id', 'offers', ['brand_id'])
    op.create_index('ix_offers_creator_id', 'offers', ['creator_id'])
    op.create_index('ix_offers_pair_status', 'offers', ['brand_id', 'creator_id', 'status'])

    # 3. Contracts and their audit trail
    op.create_table('contracts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('brand_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('creator_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('offer_id', sa.String(36), sa.ForeignKey('offers.id', ondelete='SET NULL'), unique=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('requirements', sa.JSON),
        sa.Column('budget', sa.Integer, nullable=False),
        sa.Column('estimated_days', sa.Integer, nullable=False, server_default='1'),
        sa.Column('status', CONTRACT_STATUS, nullable=False, server_default='pending'),
        sa.Column('workflow_status', CONTRACT_WORKFLOW, nullable=False, server_default='awaiting_funding'),
        sa.Column('started_at', sa.DateTime),
        sa.Column('expected_completion_at', sa.DateTime),
        sa.Column('submitted_at', sa.DateTime),
        sa.Column('completed_at', sa.DateTime),
        sa.Column('completed_by', sa.String(36)),
        sa.Column('cancelled_at', sa.DateTime),
        sa.Column('cancellation_reason', sa.Text),
        sa.Column('disputed_at', sa.DateTime),
        sa.Column('dispute_reason', sa.Text),
        sa.Column('created_at', sa.DateTime),
        sa.Column('updated_at', sa.DateTime),
    )
    op.create_index('ix_contracts_brand_id', 'contracts', ['brand_id'])
    op.create_index('ix_contracts_creator_id', 'contracts', ['creator_id'])

    op.create_table('contract_audit_logs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('contract_id', sa.String(36), sa.ForeignKey('contracts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('actor_id', sa.String(36)),
        sa.Column('details', sa.JSON),
        sa.Column('created_at', sa.DateTime),
    )
    op.create_index('ix_contract_audit_logs_contract_id', 'contract_audit_logs', ['contract_id'])

    # 4. Payments, one per contract
    op.create_table('job_payments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('contract_id', sa.String(36), sa.ForeignKey('contracts.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('brand_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('creator_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('total_amount', sa.Integer, nullable=False),
        sa.Column('platform_fee', sa.Integer, nullable=False),
        sa.Column('creator_amount', sa.Integer, nullable=False),
        sa.Column('currency', sa.String(3), server_default='usd'),
        sa.Column('status', PAYMENT_STATUS, nullable=False, server_default='pending'),
        sa.Column('stripe_payment_intent_id', sa.String(255)),
        sa.Column('stripe_checkout_session_id', sa.String(255), unique=True),
        sa.Column('paid_at', sa.DateTime),
        sa.Column('released_at', sa.DateTime),
        sa.Column('refunded_at', sa.DateTime),
        sa.Column('created_at', sa.DateTime),
    )
    op.create_index('ix_job_payments_creator_id', 'job_payments', ['creator_id'])

    # 5. Creator balances, one per creator
    op.create_table('creator_balances',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('creator_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('available_balance', sa.Integer, nullable=False, server_default='0'),
        sa.Column('pending_balance', sa.Integer, nullable=False, server_default='0'),
        sa.Column('total_earned', sa.Integer, nullable=False, server_default='0'),
        sa.Column('total_withdrawn', sa.Integer, nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime),
        sa.Column('updated_at', sa.DateTime),
    )

    # 6. Withdrawals
    op.create_table('withdrawal_methods',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('code', sa.String(50), nullable=False, unique=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('min_amount', sa.Integer, nullable=False),
        sa.Column('max_amount', sa.Integer),
        sa.Column('fixed_fee', sa.Integer, nullable=False, server_default='0'),
        sa.Column('fee_percentage', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('required_fields', sa.JSON),
        sa.Column('is_automatic', sa.Boolean, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean, server_default=sa.true()),
        sa.Column('sort_order', sa.Integer, server_default='0'),
    )

    op.create_table('withdrawals',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('creator_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('amount', sa.Integer, nullable=False),
        sa.Column('platform_fee', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('fixed_fee', sa.Integer, nullable=False, server_default='0'),
        sa.Column('net_amount', sa.Integer, nullable=False),
        sa.Column('method', sa.String(50), nullable=False),
        sa.Column('details', sa.JSON),
        sa.Column('status', WITHDRAWAL_STATUS, nullable=False, server_default='pending'),
        sa.Column('transaction_id', sa.String(255)),
        sa.Column('failure_reason', sa.Text),
        sa.Column('processed_at', sa.DateTime),
        sa.Column('completed_at', sa.DateTime),
        sa.Column('cancelled_at', sa.DateTime),
        sa.Column('created_at', sa.DateTime),
        sa.Column('updated_at', sa.DateTime),
    )
    op.create_index('ix_withdrawals_creator_id', 'withdrawals', ['creator_id'])

    # 7. Webhook event ledger
    op.create_table('webhook_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('external_event_id', sa.String(255), nullable=False),
        sa.Column('type', sa.String(100), nullable=False),
        sa.Column('payload', sa.JSON),
        sa.Column('status', WEBHOOK_STATUS, nullable=False, server_default='processing'),
        sa.Column('error_message', sa.Text),
        sa.Column('attempts', sa.Integer, nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime),
        sa.Column('updated_at', sa.DateTime),
        sa.Column('processed_at', sa.DateTime),
        sa.UniqueConstraint('external_event_id', name='uq_webhook_events_external_event_id'),
    )

    # 8. Subscriptions
    op.create_table('subscription_plans',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('price', sa.Integer, nullable=False),
        sa.Column('interval_months', sa.Integer, nullable=False, server_default='1'),
        sa.Column('stripe_price_id', sa.String(255)),
        sa.Column('is_active', sa.Boolean, server_default=sa.true()),
    )

    op.create_table('subscriptions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('plan_id', sa.String(36), sa.ForeignKey('subscription_plans.id')),
        sa.Column('status', SUBSCRIPTION_STATUS, nullable=False, server_default='pending'),
        sa.Column('stripe_subscription_id', sa.String(255), unique=True),
        sa.Column('stripe_status', sa.String(50)),
        sa.Column('stripe_latest_invoice_id', sa.String(255)),
        sa.Column('starts_at', sa.DateTime),
        sa.Column('expires_at', sa.DateTime),
        sa.Column('cancelled_at', sa.DateTime),
        sa.Column('created_at', sa.DateTime),
        sa.Column('updated_at', sa.DateTime),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])

    # 9. Notifications
    op.create_table('notifications',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', sa.String(50), nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('message', sa.Text),
        sa.Column('data', sa.JSON),
        sa.Column('read', sa.Boolean, server_default=sa.false()),
        sa.Column('read_at', sa.DateTime),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )


def downgrade():
    op.drop_table('notifications')
    op.drop_table('subscriptions')
    op.drop_table('subscription_plans')
    op.drop_table('webhook_events')
    op.drop_table('withdrawals')
    op.drop_table('withdrawal_methods')
    op.drop_table('creator_balances')
    op.drop_table('job_payments')
    op.drop_table('contract_audit_logs')
    op.drop_table('contracts')
    op.drop_table('offers')
    op.drop_table('users')

    bind = op.get_bind()
    for enum_type in (
        SUBSCRIPTION_STATUS, WEBHOOK_STATUS, WITHDRAWAL_STATUS, PAYMENT_STATUS,
        CONTRACT_WORKFLOW, CONTRACT_STATUS, OFFER_STATUS, USER_TYPE,
    ):
        enum_type.drop(bind, checkfirst=True)
