"""initial gateway schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import INET, JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create credit, usage, abuse and cache tables."""

    # ========================================================================
    # Create credit_accounts table
    # ========================================================================
    op.create_table(
        'credit_accounts',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('plan', sa.String(20), nullable=False, server_default='free'),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('next_reset_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('timezone', sa.String(64), nullable=False, server_default='UTC'),
        sa.Column('billing_anchor', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('balance >= 0', name='ck_credit_balance_non_negative'),
        sa.CheckConstraint("plan IN ('free', 'paid')", name='ck_credit_plan'),
        sa.UniqueConstraint('user_id', name='uq_credit_accounts_user_id'),
    )

    op.create_index('idx_credit_accounts_next_reset', 'credit_accounts', ['next_reset_at'])

    # ========================================================================
    # Create usage_logs table
    # ========================================================================
    op.create_table(
        'usage_logs',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('request_id', sa.String(255), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('action', sa.String(20), nullable=False),
        sa.Column('credits_used', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('processing_time_ms', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('credits_used >= 0', name='ck_usage_credits_non_negative'),
        sa.CheckConstraint("status IN ('pending', 'success', 'failed', 'refunded')", name='ck_usage_status'),
        sa.CheckConstraint("action IN ('tryon', 'video', 'model3d')", name='ck_usage_action'),
        sa.UniqueConstraint('request_id', name='uq_usage_logs_request_id'),
    )

    op.create_index('idx_usage_logs_user_created', 'usage_logs', ['user_id', 'created_at'])
    op.create_index('idx_usage_logs_pending', 'usage_logs', ['status'], postgresql_where=sa.text("status = 'pending'"))

    # ========================================================================
    # Create abuse_records table
    # ========================================================================
    op.create_table(
        'abuse_records',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=True),
        sa.Column('ip_address', INET(), nullable=True),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('severity', sa.String(10), nullable=False),
        sa.Column('details', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint("severity IN ('low', 'medium', 'high')", name='ck_abuse_severity'),
    )

    op.create_index('idx_abuse_records_user_created', 'abuse_records', ['user_id', 'created_at'])
    op.create_index(
        'idx_abuse_records_ip_created',
        'abuse_records',
        ['ip_address', 'created_at'],
        postgresql_where=sa.text('ip_address IS NOT NULL'),
    )

    # ========================================================================
    # Create block_entries table
    # ========================================================================
    op.create_table(
        'block_entries',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=True),
        sa.Column('ip_address', INET(), nullable=True),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('source', sa.String(10), nullable=False, server_default='auto'),
        sa.Column('trigger_event', sa.String(50), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),

        sa.CheckConstraint('user_id IS NOT NULL OR ip_address IS NOT NULL', name='ck_block_has_target'),
        sa.CheckConstraint("source IN ('auto', 'manual')", name='ck_block_source'),
    )

    op.create_index('idx_block_entries_user', 'block_entries', ['user_id'], postgresql_where=sa.text('user_id IS NOT NULL'))
    op.create_index('idx_block_entries_ip', 'block_entries', ['ip_address'], postgresql_where=sa.text('ip_address IS NOT NULL'))

    # ========================================================================
    # Create result_cache table
    # ========================================================================
    op.create_table(
        'result_cache',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('fingerprint', sa.String(64), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('action', sa.String(20), nullable=False),
        sa.Column('subject_key', sa.String(255), nullable=False),
        sa.Column('source_hash', sa.String(64), nullable=False),
        sa.Column('result_pointer', sa.Text(), nullable=False),
        sa.Column('access_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('last_accessed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),

        sa.UniqueConstraint('fingerprint', name='uq_result_cache_fingerprint'),
    )

    op.create_index('idx_result_cache_user_created', 'result_cache', ['user_id', 'created_at'])
    op.create_index('idx_result_cache_expires', 'result_cache', ['expires_at'])


def downgrade() -> None:
    """Drop all gateway tables."""
    op.drop_table('result_cache')
    op.drop_table('block_entries')
    op.drop_table('abuse_records')
    op.drop_table('usage_logs')
    op.drop_table('credit_accounts')
