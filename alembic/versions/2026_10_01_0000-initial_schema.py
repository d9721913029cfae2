"""initial schema

Revision ID: 2026_10_01_0000
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '2026_10_01_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create users, otp_codes, chats, messages and credit_transactions."""

    # ========================================================================
    # Create users table
    # ========================================================================
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('stripe_customer_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        sa.CheckConstraint('credits >= 0', name='ck_users_credits_non_negative'),
        sa.UniqueConstraint('email', name='uq_users_email'),
    )

    # ========================================================================
    # Create otp_codes table
    # ========================================================================
    op.create_table(
        'otp_codes',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('purpose', sa.String(32), nullable=False),
        sa.Column('code', sa.String(6), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('issued_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        sa.UniqueConstraint('email', 'purpose', name='uq_otp_codes_email_purpose'),
        sa.CheckConstraint("purpose IN ('signup', 'password_reset')", name='ck_otp_codes_purpose_valid'),
    )

    # ========================================================================
    # Create chats table
    # ========================================================================
    op.create_table(
        'chats',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('title', sa.String(255), nullable=False, server_default='Untitled Chat'),
        sa.Column('owner_id', sa.Uuid(), nullable=True),
        sa.Column('last_seq', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        sa.ForeignKeyConstraint(['owner_id'], ['users.id'], name='fk_chats_owner', ondelete='CASCADE'),
    )
    op.create_index('idx_chats_owner_updated', 'chats', ['owner_id', 'updated_at'])

    # ========================================================================
    # Create messages table
    # ========================================================================
    op.create_table(
        'messages',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('chat_id', sa.Uuid(), nullable=False),
        sa.Column('seq', sa.Integer(), nullable=False),
        sa.Column('role', sa.String(16), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('model', sa.String(255), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        sa.ForeignKeyConstraint(['chat_id'], ['chats.id'], name='fk_messages_chat', ondelete='CASCADE'),
        sa.UniqueConstraint('chat_id', 'seq', name='uq_messages_chat_seq'),
        sa.CheckConstraint("role IN ('system', 'user', 'assistant')", name='ck_messages_role_valid'),
    )

    # ========================================================================
    # Create credit_transactions table
    # ========================================================================
    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('transaction_type', sa.String(20), nullable=False),
        sa.Column('description', sa.String(500), nullable=False, server_default=''),
        sa.Column('external_reference', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_credit_transactions_user', ondelete='CASCADE'),
        sa.UniqueConstraint('external_reference', name='uq_credit_transactions_external_reference'),
        sa.CheckConstraint('amount != 0', name='ck_credit_transactions_amount_nonzero'),
        sa.CheckConstraint('balance_after >= 0', name='ck_credit_transactions_balance_non_negative'),
        sa.CheckConstraint(
            "transaction_type IN ('purchase', 'grant', 'usage')",
            name='ck_credit_transactions_type_valid',
        ),
    )
    op.create_index('idx_credit_transactions_user_created', 'credit_transactions', ['user_id', 'created_at'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index('idx_credit_transactions_user_created', table_name='credit_transactions')
    op.drop_table('credit_transactions')
    op.drop_table('messages')
    op.drop_index('idx_chats_owner_updated', table_name='chats')
    op.drop_table('chats')
    op.drop_table('otp_codes')
    op.drop_table('users')
