"""Initial schema - Baseline migration

Revision ID: 001_initial
Revises:
Create Date: 2025-01-15 00:00:00.000000

Creates the compliance tables, the tenant-isolation policies and the
(tenant_id, dedupe_key) constraint the alert generator relies on.
For existing databases, use `alembic stamp 001_initial` to mark as applied.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TENANT_TABLES = (
    'drivers',
    'compliance_rules',
    'driver_compliance_documents',
    'compliance_alerts',
    'compliance_snapshots',
    'audit_logs',
)


def _uuid_pk() -> sa.Column:
    return sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                     server_default=sa.text('gen_random_uuid()'))


def _tenant_fk() -> sa.Column:
    return sa.Column('tenant_id', postgresql.UUID(as_uuid=True),
                     sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False)


def _timestamps() -> list:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()')),
    ]


def upgrade() -> None:
    """Create initial database schema."""

    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    op.create_table(
        'tenants',
        _uuid_pk(),
        sa.Column('name', sa.String(200), nullable=False),
        *_timestamps()
    )

    op.create_table(
        'drivers',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('first_name', sa.String(100), nullable=False),
        sa.Column('last_name', sa.String(100), nullable=False),
        sa.Column('email', sa.String(255)),
        sa.Column('license_number', sa.String(50)),
        sa.Column('deleted_at', sa.DateTime(timezone=True)),
        *_timestamps()
    )

    op.create_table(
        'compliance_rules',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('role', sa.String(50), nullable=False, server_default='driver'),
        sa.Column('doc_type', sa.String(100), nullable=False),
        sa.Column('required', sa.Boolean, nullable=False, server_default='true'),
        sa.Column('grace_days', sa.Integer, nullable=False, server_default='0'),
        sa.Column('alert_windows', postgresql.JSONB),
        *_timestamps(),
        sa.UniqueConstraint('tenant_id', 'role', 'doc_type', name='uq_rule_tenant_role_doc_type'),
        sa.CheckConstraint('grace_days >= 0', name='ck_rule_grace_days')
    )

    op.create_table(
        'driver_compliance_documents',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('driver_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('drivers.id', ondelete='CASCADE'), nullable=False),
        sa.Column('doc_type', sa.String(100), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(30)),
        sa.Column('deleted_at', sa.DateTime(timezone=True)),
        *_timestamps()
    )

    op.create_table(
        'compliance_alerts',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('driver_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('doc_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('alert_type', sa.String(20), nullable=False),
        sa.Column('alert_window_days', sa.Integer, nullable=False),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()')),
        sa.Column('channel', sa.String(20), nullable=False),
        sa.Column('dedupe_key', sa.String(255), nullable=False),
        sa.UniqueConstraint('tenant_id', 'dedupe_key', name='uq_alert_tenant_dedupe_key'),
        sa.CheckConstraint("alert_type IN ('expiring', 'expired')", name='ck_alert_type'),
        sa.CheckConstraint('alert_window_days >= 0', name='ck_alert_window_days')
    )

    op.create_table(
        'compliance_snapshots',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('driver_id', postgresql.UUID(as_uuid=True)),
        sa.Column('compliance_score', sa.Integer, nullable=False),
        sa.Column('compliant', sa.Boolean, nullable=False),
        sa.Column('expired_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('expiring_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('missing_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('computed_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()')),
        sa.Column('details', postgresql.JSONB),
        sa.CheckConstraint('compliance_score >= 0 AND compliance_score <= 100',
                           name='ck_snapshot_score_range')
    )

    op.create_table(
        'audit_logs',
        _uuid_pk(),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()')),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('table_name', sa.String(100), nullable=False),
        sa.Column('record_id', postgresql.UUID(as_uuid=True)),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('after', postgresql.JSONB),
        sa.Column('user_id', sa.String(100)),
        sa.Column('ip_address', sa.String(50)),
        sa.Column('error_message', sa.Text)
    )

    # Create indexes
    op.create_index('ix_drivers_tenant_id', 'drivers', ['tenant_id'])
    op.create_index('ix_drivers_deleted_at', 'drivers', ['deleted_at'])
    op.create_index('ix_driver_tenant_name', 'drivers', ['tenant_id', 'last_name', 'first_name'])

    op.create_index('ix_compliance_rules_tenant_id', 'compliance_rules', ['tenant_id'])

    op.create_index('ix_driver_compliance_documents_tenant_id', 'driver_compliance_documents', ['tenant_id'])
    op.create_index('ix_driver_compliance_documents_driver_id', 'driver_compliance_documents', ['driver_id'])
    op.create_index('ix_driver_compliance_documents_deleted_at', 'driver_compliance_documents', ['deleted_at'])
    op.create_index('ix_document_tenant_driver', 'driver_compliance_documents', ['tenant_id', 'driver_id'])
    op.create_index('ix_document_expires', 'driver_compliance_documents', ['tenant_id', 'expires_at'])

    op.create_index('ix_compliance_alerts_tenant_id', 'compliance_alerts', ['tenant_id'])
    op.create_index('ix_alert_driver_doc', 'compliance_alerts', ['tenant_id', 'driver_id', 'doc_id'])

    op.create_index('ix_compliance_snapshots_tenant_id', 'compliance_snapshots', ['tenant_id'])
    op.create_index('ix_snapshot_tenant_driver_date', 'compliance_snapshots',
                    ['tenant_id', 'driver_id', 'computed_at'])

    op.create_index('ix_audit_logs_timestamp', 'audit_logs', ['timestamp'])
    op.create_index('ix_audit_logs_tenant_id', 'audit_logs', ['tenant_id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_tenant_table_action', 'audit_logs', ['tenant_id', 'table_name', 'action'])

    # Row-level security keyed on the transaction-local tenant setting
    for table in TENANT_TABLES:
        op.execute(f'ALTER TABLE {table} ENABLE ROW LEVEL SECURITY')
        op.execute(f"""
            CREATE POLICY {table}_tenant_isolation ON {table}
            USING (tenant_id = NULLIF(current_setting('app.current_tenant_id', true), '')::uuid)
            WITH CHECK (tenant_id = NULLIF(current_setting('app.current_tenant_id', true), '')::uuid)
        """)

    # Audit logs are append-only
    op.execute("""
        CREATE OR REPLACE FUNCTION prevent_audit_log_changes() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'audit_logs is append-only';
        END;
        $$ LANGUAGE plpgsql
    """)
    op.execute("""
        CREATE TRIGGER audit_logs_append_only
        BEFORE UPDATE OR DELETE ON audit_logs
        FOR EACH ROW EXECUTE FUNCTION prevent_audit_log_changes()
    """)


def downgrade() -> None:
    """Drop all tables, policies and triggers."""
    op.execute('DROP TRIGGER IF EXISTS audit_logs_append_only ON audit_logs')
    op.execute('DROP FUNCTION IF EXISTS prevent_audit_log_changes()')

    for table in TENANT_TABLES:
        op.execute(f'DROP POLICY IF EXISTS {table}_tenant_isolation ON {table}')

    # Drop tables in reverse order
    op.drop_table('audit_logs')
    op.drop_table('compliance_snapshots')
    op.drop_table('compliance_alerts')
    op.drop_table('driver_compliance_documents')
    op.drop_table('compliance_rules')
    op.drop_table('drivers')
    op.drop_table('tenants')
