"""Initial migration - create payment_transactions table

Revision ID: 001_initial
Revises:
Create Date: 2026-10-16

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
        'payment_transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('reference', sa.String(255), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('provider_id', sa.String(255), nullable=True),
        sa.Column('status', sa.String(50), nullable=False, server_default='pending'),
        sa.Column('amount', sa.Numeric(15, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('channel', sa.String(50), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('webhook_status', sa.String(50), nullable=True),
        sa.Column('metadata_json', sa.Text(), nullable=True),
        sa.Column('customer_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    op.create_index('ix_payment_transactions_reference', 'payment_transactions', ['reference'], unique=True)
    op.create_index('ix_payment_transactions_status', 'payment_transactions', ['status'])
    op.create_index('ix_payment_transactions_provider', 'payment_transactions', ['provider'])
    op.create_index('ix_payment_transactions_created_at', 'payment_transactions', ['created_at'])


def downgrade() -> None:
    op.drop_index('ix_payment_transactions_created_at', table_name='payment_transactions')
    op.drop_index('ix_payment_transactions_provider', table_name='payment_transactions')
    op.drop_index('ix_payment_transactions_status', table_name='payment_transactions')
    op.drop_index('ix_payment_transactions_reference', table_name='payment_transactions')
    op.drop_table('payment_transactions')
