"""Initial schema - Baseline migration

Revision ID: 001_initial
Revises:
Create Date: 2025-01-01 00:00:00.000000

This is the baseline migration that creates all tables for the ATS Verify
risk analysis backend: iin_bin_risks, risk_raw_data and audit_logs.
For existing databases, use `alembic stamp 001_initial` to mark as applied.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

RISK_LEVELS = ('green', 'yellow', 'red')
AUDIT_ACTIONS = ('ANALYZE', 'AUTO_FLAG', 'MANUAL_FLAG', 'DELETE')


def upgrade() -> None:
    """Create initial database schema."""

    # Create iin_bin_risks table
    op.create_table(
        'iin_bin_risks',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column('iin_bin', sa.String(64), nullable=False),
        sa.Column('risk_level', sa.Enum(*RISK_LEVELS, name='risk_level'), nullable=False),
        sa.Column('flagged_by', sa.String(200), nullable=False, server_default=''),
        sa.Column('comment', sa.Text, nullable=False, server_default=''),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.UniqueConstraint('iin_bin', name='uq_iin_bin_risks_iin_bin')
    )

    # Create risk_raw_data table
    op.create_table(
        'risk_raw_data',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column('batch_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('iin_bin', sa.String(64), nullable=False),
        sa.Column('application_id', sa.String(100), nullable=False, server_default=''),
        sa.Column('document_number', sa.String(200), nullable=False, server_default=''),
        sa.Column('status', sa.String(500), nullable=False, server_default=''),
        sa.Column('reject_reason', sa.Text, nullable=False, server_default=''),
        sa.Column('reason', sa.Text, nullable=False, server_default=''),
        sa.Column('organization', sa.String(500), nullable=False, server_default=''),
        sa.Column('user_name', sa.String(200), nullable=False, server_default=''),
        sa.Column('report_date', sa.DateTime(timezone=True)),
        sa.Column('uploaded_by', sa.String(200), nullable=False, server_default=''),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now())
    )

    # Create audit_logs table
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column('action', sa.Enum(*AUDIT_ACTIONS, name='audit_action'), nullable=False),
        sa.Column('resource_type', sa.String(100), nullable=False),
        sa.Column('resource_id', sa.String(100)),
        sa.Column('actor_id', sa.String(200)),
        sa.Column('details', sa.JSON),
        sa.Column('success', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('error_message', sa.Text)
    )

    # Create indexes
    op.create_index('ix_iin_bin_risks_risk_level', 'iin_bin_risks', ['risk_level'])
    op.create_index('ix_risk_updated_at', 'iin_bin_risks', ['updated_at'])

    op.create_index('ix_risk_raw_data_batch_id', 'risk_raw_data', ['batch_id'])
    op.create_index('ix_risk_raw_data_iin_bin', 'risk_raw_data', ['iin_bin'])
    op.create_index('ix_risk_raw_data_document_number', 'risk_raw_data', ['document_number'])

    op.create_index('ix_audit_logs_timestamp', 'audit_logs', ['timestamp'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_resource_type', 'audit_logs', ['resource_type'])
    op.create_index('ix_audit_logs_actor_id', 'audit_logs', ['actor_id'])
    op.create_index('ix_audit_resource', 'audit_logs', ['resource_type', 'resource_id'])


def downgrade() -> None:
    """Drop all tables and types."""
    # Drop tables in reverse order
    op.drop_table('audit_logs')
    op.drop_table('risk_raw_data')
    op.drop_table('iin_bin_risks')

    # Drop enums
    if op.get_bind().dialect.name == 'postgresql':
        op.execute('DROP TYPE IF EXISTS audit_action')
        op.execute('DROP TYPE IF EXISTS risk_level')
