"""create credential, backup, attempt and audit tables

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "credentials",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("environment", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("last_rotated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_in_days", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("external_ref", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "source", "external_ref", name="uq_credentials_external_ref"),
    )
    op.create_index("ix_credentials_tenant_id", "credentials", ["tenant_id"], unique=False)
    op.create_index("ix_credentials_type", "credentials", ["type"], unique=False)
    op.create_index(
        "ix_credentials_tenant_expires", "credentials", ["tenant_id", "expires_in_days"], unique=False
    )
    op.create_index("ix_credentials_tenant_status", "credentials", ["tenant_id", "status"], unique=False)

    # Backups hold sealed payloads only; the expiry index drives the cleanup sweep.
    op.create_table(
        "credential_backups",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("credential_id", sa.String(), nullable=False),
        sa.Column("credential_name", sa.String(), nullable=False),
        sa.Column("credential_type", sa.String(), nullable=False),
        sa.Column("old_value_sealed", sa.Text(), nullable=False),
        sa.Column("backup_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_credential_backups_tenant_id", "credential_backups", ["tenant_id"], unique=False)
    op.create_index("ix_credential_backups_expires_at", "credential_backups", ["expires_at"], unique=False)
    op.create_index(
        "ix_credential_backups_tenant_credential",
        "credential_backups",
        ["tenant_id", "credential_id"],
        unique=False,
    )

    op.create_table(
        "rotation_attempts",
        sa.Column("seq", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("attempt_id", sa.String(), nullable=False, unique=True),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("credential_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("backup_id", sa.String(), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_rotation_attempts_run_id", "rotation_attempts", ["run_id"], unique=False)
    op.create_index(
        "ix_rotation_attempts_tenant_credential",
        "rotation_attempts",
        ["tenant_id", "credential_id"],
        unique=False,
    )
    op.create_index(
        "ix_rotation_attempts_tenant_status_recorded",
        "rotation_attempts",
        ["tenant_id", "status", "recorded_at"],
        unique=False,
    )

    op.create_table(
        "rotation_audit_log",
        sa.Column("seq", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("id", sa.String(), nullable=False, unique=True),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("ttl", sa.BigInteger(), nullable=False),
    )
    op.create_index("ix_rotation_audit_log_timestamp", "rotation_audit_log", ["timestamp"], unique=False)
    op.create_index("ix_rotation_audit_log_action", "rotation_audit_log", ["action"], unique=False)
    op.create_index("ix_rotation_audit_log_ttl", "rotation_audit_log", ["ttl"], unique=False)
    op.create_index(
        "ix_rotation_audit_log_tenant_timestamp",
        "rotation_audit_log",
        ["tenant_id", "timestamp"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_rotation_audit_log_tenant_timestamp", table_name="rotation_audit_log")
    op.drop_index("ix_rotation_audit_log_ttl", table_name="rotation_audit_log")
    op.drop_index("ix_rotation_audit_log_action", table_name="rotation_audit_log")
    op.drop_index("ix_rotation_audit_log_timestamp", table_name="rotation_audit_log")
    op.drop_table("rotation_audit_log")
    op.drop_index("ix_rotation_attempts_tenant_status_recorded", table_name="rotation_attempts")
    op.drop_index("ix_rotation_attempts_tenant_credential", table_name="rotation_attempts")
    op.drop_index("ix_rotation_attempts_run_id", table_name="rotation_attempts")
    op.drop_table("rotation_attempts")
    op.drop_index("ix_credential_backups_tenant_credential", table_name="credential_backups")
    op.drop_index("ix_credential_backups_expires_at", table_name="credential_backups")
    op.drop_index("ix_credential_backups_tenant_id", table_name="credential_backups")
    op.drop_table("credential_backups")
    op.drop_index("ix_credentials_tenant_status", table_name="credentials")
    op.drop_index("ix_credentials_tenant_expires", table_name="credentials")
    op.drop_index("ix_credentials_type", table_name="credentials")
    op.drop_index("ix_credentials_tenant_id", table_name="credentials")
    op.drop_table("credentials")
