"""Initial schema - users with credits, ledger entries, executions and messages

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('credits', sa.Integer, nullable=False, server_default='0'),
        sa.Column('is_premium', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('otp_hash', sa.String(255), nullable=True),
        sa.Column('otp_expires_at', sa.DateTime, nullable=True),
        sa.Column('otp_attempts', sa.Integer, server_default='0'),
        sa.Column('stripe_customer_id', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
        sa.CheckConstraint('credits >= 0', name='ck_users_credits_non_negative'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('entry_type', sa.String(20), nullable=False),
        sa.Column('delta', sa.Integer, server_default='0'),
        sa.Column('reference', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index('ix_credit_transactions_user_id', 'credit_transactions', ['user_id'])
    op.create_index('ix_credit_transactions_reference', 'credit_transactions', ['reference'])

    op.create_table(
        'executions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('type', sa.String(40), nullable=False, server_default='CONVERSATION'),
        sa.Column('title', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('message_count', sa.Integer, server_default='0'),
    )
    op.create_index('ix_executions_user_id', 'executions', ['user_id'])
    op.create_index('ix_executions_type', 'executions', ['type'])
    op.create_index('ix_executions_user_updated', 'executions', ['user_id', 'updated_at'])

    op.create_table(
        'messages',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column(
            'execution_id', sa.String(36),
            sa.ForeignKey('executions.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('position', sa.Integer, nullable=False),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('content', sa.Text, nullable=False),
        sa.Column('model_used', sa.String(120), nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint('execution_id', 'position', name='uq_messages_execution_position'),
    )
    op.create_index('ix_messages_execution_id', 'messages', ['execution_id'])


def downgrade() -> None:
    op.drop_table('messages')
    op.drop_table('executions')
    op.drop_table('credit_transactions')
    op.drop_table('users')
