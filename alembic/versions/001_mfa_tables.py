"""create mfa gate tables

Revision ID: 001_mfa_tables
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001_mfa_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'mfa_credentials',
        sa.Column('principal_id', sa.String(128), nullable=False),
        sa.Column('secret_encrypted', sa.Text(), nullable=False),
        sa.Column('confirmed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('enrolled_at_utc', sa.DateTime(timezone=True), nullable=False),
        sa.Column('confirmed_at_utc', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_used_step', sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint('principal_id'),
    )

    op.create_table(
        'mfa_backup_codes',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('principal_id', sa.String(128), nullable=False),
        sa.Column('code_hash', sa.String(255), nullable=False),
        sa.Column('consumed_at_utc', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at_utc', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(
            ['principal_id'],
            ['mfa_credentials.principal_id'],
            name='mfa_backup_codes_credential_fk',
            ondelete='CASCADE'
        ),
    )
    op.create_index('ix_mfa_backup_codes_principal_id', 'mfa_backup_codes', ['principal_id'])

    op.create_table(
        'mfa_lockouts',
        sa.Column('principal_id', sa.String(128), nullable=False),
        sa.Column('consecutive_failures', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('locked_until_utc', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_failure_at_utc', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at_utc', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('principal_id'),
    )

    op.create_table(
        'mfa_sessions',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('principal_id', sa.String(128), nullable=False),
        sa.Column('device_fingerprint', sa.String(255), nullable=False),
        sa.Column('verified', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('issued_at_utc', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at_utc', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('principal_id', 'device_fingerprint', name='uq_mfa_session_device'),
    )
    op.create_index('ix_mfa_sessions_principal_id', 'mfa_sessions', ['principal_id'])

    op.create_table(
        'mfa_bypass_grants',
        sa.Column('principal_id', sa.String(128), nullable=False),
        sa.Column('granted_at_utc', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at_utc', sa.DateTime(timezone=True), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('granted_by', sa.String(128), nullable=True),
        sa.PrimaryKeyConstraint('principal_id'),
    )

    op.create_table(
        'mfa_audit_events',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('at_utc', sa.DateTime(timezone=True), nullable=False),
        sa.Column('kind', sa.String(64), nullable=False),
        sa.Column('principal_id', sa.String(128), nullable=True),
        sa.Column('outcome', sa.String(32), nullable=False),
        sa.Column('details', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_mfa_audit_events_at_utc', 'mfa_audit_events', ['at_utc'])
    op.create_index('ix_mfa_audit_events_kind', 'mfa_audit_events', ['kind'])
    op.create_index('ix_mfa_audit_events_principal_id', 'mfa_audit_events', ['principal_id'])


def downgrade() -> None:
    op.drop_index('ix_mfa_audit_events_principal_id', table_name='mfa_audit_events')
    op.drop_index('ix_mfa_audit_events_kind', table_name='mfa_audit_events')
    op.drop_index('ix_mfa_audit_events_at_utc', table_name='mfa_audit_events')
    op.drop_table('mfa_audit_events')
    op.drop_table('mfa_bypass_grants')
    op.drop_index('ix_mfa_sessions_principal_id', table_name='mfa_sessions')
    op.drop_table('mfa_sessions')
    op.drop_table('mfa_lockouts')
    op.drop_index('ix_mfa_backup_codes_principal_id', table_name='mfa_backup_codes')
    op.drop_table('mfa_backup_codes')
    op.drop_table('mfa_credentials')
