"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # Create merchant_plans table
    # ========================================================================
    op.create_table(
        'merchant_plans',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('monthly_credits', sa.Integer(), nullable=False),
        sa.Column('max_concurrent_chats', sa.Integer(), nullable=False, server_default='2'),
        sa.Column('price', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('features', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('monthly_credits >= 0', name='ck_plan_credits_non_negative'),
        sa.UniqueConstraint('name', name='uq_merchant_plan_name'),
    )

    # ========================================================================
    # Create merchant_credits table
    # ========================================================================
    op.create_table(
        'merchant_credits',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('shop', sa.String(255), nullable=False),
        sa.Column('plan_id', UUID(as_uuid=True), nullable=False),
        sa.Column('total_credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('used_credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('remaining_credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ai_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('auto_recharge', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('total_requests', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_users', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('used_credits >= 0', name='ck_used_credits_non_negative'),
        sa.CheckConstraint('remaining_credits >= 0', name='ck_remaining_credits_non_negative'),
        sa.CheckConstraint('total_requests >= 0', name='ck_total_requests_non_negative'),
        sa.CheckConstraint('total_users >= 0', name='ck_total_users_non_negative'),
        sa.UniqueConstraint('shop', name='uq_merchant_credits_shop'),
        sa.ForeignKeyConstraint(['plan_id'], ['merchant_plans.id'], name='fk_merchant_credits_plan', ondelete='RESTRICT'),
    )

    op.create_index('ix_merchant_credits_plan_id', 'merchant_credits', ['plan_id'])
    op.create_index('idx_merchant_credits_period_end', 'merchant_credits', ['period_end'])

    # ========================================================================
    # Create usage_logs table (append-only)
    # ========================================================================
    op.create_table(
        'usage_logs',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('merchant_credits_id', UUID(as_uuid=True), nullable=False),
        sa.Column('shop', sa.String(255), nullable=False),
        sa.Column('request_type', sa.String(20), nullable=False),
        sa.Column('credits_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('session_id', sa.String(255), nullable=True),
        sa.Column('customer_id', sa.String(255), nullable=True),
        sa.Column('user_message', sa.String(255), nullable=True),
        sa.Column('response_time_ms', sa.Integer(), nullable=True),
        sa.Column('tokens_used', sa.Integer(), nullable=True),
        sa.Column('was_successful', sa.Boolean(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('credits_used >= 0', name='ck_usage_credits_non_negative'),
        sa.CheckConstraint(
            "request_type IN ('AI_CHAT', 'KEYWORD_RESPONSE', 'MANUAL_HANDOFF')",
            name='ck_usage_request_type',
        ),
        sa.ForeignKeyConstraint(['merchant_credits_id'], ['merchant_credits.id'], name='fk_usage_logs_account', ondelete='CASCADE'),
    )

    op.create_index('idx_usage_logs_account_created', 'usage_logs', ['merchant_credits_id', 'created_at'])
    op.create_index(
        'idx_usage_logs_customer', 'usage_logs', ['merchant_credits_id', 'customer_id'],
        postgresql_where=sa.text('customer_id IS NOT NULL'),
    )

    # ========================================================================
    # Create customers table
    # ========================================================================
    op.create_table(
        'customers',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('shop', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('source', sa.String(20), nullable=False, server_default='WEBSITE'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.UniqueConstraint('shop', 'email', name='uq_customer_shop_email'),
    )

    # ========================================================================
    # Create chat_sessions table
    # ========================================================================
    op.create_table(
        'chat_sessions',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('shop', sa.String(255), nullable=False),
        sa.Column('customer_id', UUID(as_uuid=True), nullable=True),
        sa.Column('is_guest', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('merged_into', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], name='fk_chat_sessions_customer', ondelete='SET NULL'),
    )

    op.create_index('idx_chat_sessions_customer_created', 'chat_sessions', ['shop', 'customer_id', 'created_at'])

    # ========================================================================
    # Create messages table
    # ========================================================================
    op.create_table(
        'messages',
        sa.Column('id', sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column('session_id', sa.String(255), nullable=False),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint("role IN ('user', 'assistant', 'system')", name='ck_message_role'),
        sa.ForeignKeyConstraint(['session_id'], ['chat_sessions.id'], name='fk_messages_session', ondelete='CASCADE'),
    )

    op.create_index('idx_messages_session_created', 'messages', ['session_id', 'created_at', 'id'])

    # ========================================================================
    # Create message_products table
    # ========================================================================
    op.create_table(
        'message_products',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('message_id', sa.BigInteger(), nullable=False),
        sa.Column('product_id', sa.String(255), nullable=False),
        sa.Column('title', sa.String(500), nullable=False, server_default=''),
        sa.Column('price', sa.Float(), nullable=False, server_default='0'),
        sa.Column('handle', sa.String(500), nullable=False, server_default=''),
        sa.Column('image', sa.Text(), nullable=False, server_default=''),
        sa.Column('score', sa.Float(), nullable=False, server_default='0'),

        sa.ForeignKeyConstraint(['message_id'], ['messages.id'], name='fk_message_products_message', ondelete='CASCADE'),
    )

    op.create_index('ix_message_products_message_id', 'message_products', ['message_id'])

    # ========================================================================
    # Create products table (catalogue copy)
    # ========================================================================
    op.create_table(
        'products',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('shop', sa.String(255), nullable=False),
        sa.Column('product_id', sa.String(255), nullable=False),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('handle', sa.String(500), nullable=False, server_default=''),
        sa.Column('price', sa.Float(), nullable=False, server_default='0'),
        sa.Column('image', sa.Text(), nullable=True),
        sa.Column('product_type', sa.String(255), nullable=True),
        sa.Column('tags', sa.ARRAY(sa.String()), nullable=False, server_default=sa.text("'{}'")),
        sa.Column('sales_rank', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('shop', 'product_id', name='uq_product_shop_product_id'),
    )

    op.create_index('idx_products_shop_price', 'products', ['shop', 'price'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('products')
    op.drop_table('message_products')
    op.drop_table('messages')
    op.drop_table('chat_sessions')
    op.drop_table('customers')
    op.drop_table('usage_logs')
    op.drop_table('merchant_credits')
    op.drop_table('merchant_plans')
