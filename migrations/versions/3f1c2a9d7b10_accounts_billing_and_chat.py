"""accounts, prepaid ledger, billing event log, conversations

Revision ID: 3f1c2a9d7b10
Revises:
Create Date: 2025-11-02 10:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '3f1c2a9d7b10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'accounts',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('display_name', sa.String(length=255), nullable=True),
        sa.Column('subscription_status', sa.String(length=32), nullable=False, server_default=sa.text("'none'")),
        sa.Column('subscription_id', sa.String(length=64), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('stripe_customer_id', sa.String(length=64), nullable=True),
        sa.Column('billing_event_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "subscription_status IN ('none','trialing','active','past_due','canceled')",
            name='ck_accounts_subscription_status',
        ),
    )
    op.create_index('ix_accounts_email', 'accounts', ['email'])
    # Identity resolution matches emails case-insensitively
    op.create_index('ix_accounts_email_lower', 'accounts', [sa.text('lower(email)')])
    op.create_index('ix_accounts_subscription_status', 'accounts', ['subscription_status'])
    op.create_index('ix_accounts_subscription_id', 'accounts', ['subscription_id'])
    op.create_index('ix_accounts_stripe_customer_id', 'accounts', ['stripe_customer_id'], unique=True)

    op.create_table(
        'prepaid_records',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('stripe_customer_id', sa.String(length=64), nullable=True),
        sa.Column('subscription_id', sa.String(length=64), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('claimed_by_account_id', sa.String(length=64), nullable=True),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(['claimed_by_account_id'], ['accounts.id'], ondelete="SET NULL"),
    )
    op.create_index('ix_prepaid_records_email', 'prepaid_records', ['email'], unique=True)
    op.create_index('ix_prepaid_records_stripe_customer_id', 'prepaid_records', ['stripe_customer_id'])

    op.create_table(
        'billing_event_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('stripe_event_id', sa.String(length=255), nullable=False),
        sa.Column('type', sa.String(length=80), nullable=False),
        sa.Column('signature_valid', sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('retries', sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column('notes', sa.String(length=255), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index('ix_billing_event_logs_stripe_event_id', 'billing_event_logs', ['stripe_event_id'], unique=True)
    op.create_index('ix_billing_event_logs_type', 'billing_event_logs', ['type'])

    op.create_table(
        'conversations',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('account_id', sa.String(length=64), nullable=False),
        sa.Column('title', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ondelete="CASCADE"),
    )
    op.create_index('ix_conversations_account_id', 'conversations', ['account_id'])
    op.create_index('ix_conversations_updated_at', 'conversations', ['updated_at'])

    op.create_table(
        'messages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('conversation_id', sa.String(length=36), nullable=False),
        sa.Column('seq', sa.Integer(), nullable=False),
        sa.Column('role', sa.String(length=16), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['conversation_id'], ['conversations.id'], ondelete="CASCADE"),
        sa.UniqueConstraint('conversation_id', 'seq', name='uq_messages_conversation_seq'),
        sa.CheckConstraint("role IN ('user','assistant')", name='ck_messages_role'),
    )
    op.create_index('ix_messages_conversation_id', 'messages', ['conversation_id'])


def downgrade():
    op.drop_index('ix_messages_conversation_id', table_name='messages')
    op.drop_table('messages')

    op.drop_index('ix_conversations_updated_at', table_name='conversations')
    op.drop_index('ix_conversations_account_id', table_name='conversations')
    op.drop_table('conversations')

    op.drop_index('ix_billing_event_logs_type', table_name='billing_event_logs')
    op.drop_index('ix_billing_event_logs_stripe_event_id', table_name='billing_event_logs')
    op.drop_table('billing_event_logs')

    op.drop_index('ix_prepaid_records_stripe_customer_id', table_name='prepaid_records')
    op.drop_index('ix_prepaid_records_email', table_name='prepaid_records')
    op.drop_table('prepaid_records')

    op.drop_index('ix_accounts_stripe_customer_id', table_name='accounts')
    op.drop_index('ix_accounts_subscription_id', table_name='accounts')
    op.drop_index('ix_accounts_subscription_status', table_name='accounts')
    op.drop_index('ix_accounts_email_lower', table_name='accounts')
    op.drop_index('ix_accounts_email', table_name='accounts')
    op.drop_table('accounts')
