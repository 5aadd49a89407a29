from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


# JSONB in Postgres, plain JSON elsewhere (sqlite in tests).
JsonType = JSON().with_variant(JSONB(), "postgresql")
# BIGSERIAL in Postgres; sqlite only autoincrements INTEGER primary keys.
SequenceId = BigInteger().with_variant(Integer(), "sqlite")


class UtcDateTime(TypeDecorator):
    # Always hand back aware UTC datetimes, even from backends that drop tzinfo.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    pass


class CredentialRow(Base):
    __tablename__ = "credentials"
    __table_args__ = (
        UniqueConstraint("tenant_id", "source", "external_ref", name="uq_credentials_external_ref"),
        Index("ix_credentials_tenant_expires", "tenant_id", "expires_in_days"),
        Index("ix_credentials_tenant_status", "tenant_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    type: Mapped[str] = mapped_column(String, index=True)
    environment: Mapped[str] = mapped_column(String)
    # Provenance tag: IAM, Secrets Manager, SSM Parameter Store, manual.
    source: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    last_rotated_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    # Signed; negative means overdue. Recomputed on scan and rotation.
    expires_in_days: Mapped[int] = mapped_column(Integer)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    # Provider identifiers only (user name, key id, secret id); never secret values.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime, server_default=func.now(), onupdate=func.now()
    )


class CredentialBackupRow(Base):
    __tablename__ = "credential_backups"
    __table_args__ = (
        Index("ix_credential_backups_tenant_credential", "tenant_id", "credential_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    credential_id: Mapped[str] = mapped_column(String)
    credential_name: Mapped[str] = mapped_column(String)
    credential_type: Mapped[str] = mapped_column(String)
    # Fernet token over the JSON payload; plaintext never touches the table.
    old_value_sealed: Mapped[str] = mapped_column(Text)
    backup_timestamp: Mapped[datetime] = mapped_column(UtcDateTime)
    # Time-indexed for the expiry sweep.
    expires_at: Mapped[datetime] = mapped_column(UtcDateTime, index=True)


class RotationAttemptRow(Base):
    __tablename__ = "rotation_attempts"
    __table_args__ = (
        Index("ix_rotation_attempts_tenant_credential", "tenant_id", "credential_id"),
        Index("ix_rotation_attempts_tenant_status_recorded", "tenant_id", "status", "recorded_at"),
    )

    # Monotonic sequence preserves append order for history reconstruction.
    seq: Mapped[int] = mapped_column(SequenceId, primary_key=True, autoincrement=True)
    attempt_id: Mapped[str] = mapped_column(String, unique=True)
    run_id: Mapped[str] = mapped_column(String, index=True)
    tenant_id: Mapped[str] = mapped_column(String)
    credential_id: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    retry_count: Mapped[int] = mapped_column(Integer)
    start_time: Mapped[datetime] = mapped_column(UtcDateTime)
    end_time: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    backup_id: Mapped[str | None] = mapped_column(String, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(UtcDateTime)


class AuditLogRow(Base):
    __tablename__ = "rotation_audit_log"
    __table_args__ = (
        Index("ix_rotation_audit_log_tenant_timestamp", "tenant_id", "timestamp"),
    )

    seq: Mapped[int] = mapped_column(SequenceId, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String, unique=True)
    # Null tenant for system-level maintenance events.
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UtcDateTime, index=True)
    action: Mapped[str] = mapped_column(String, index=True)
    description: Mapped[str] = mapped_column(Text)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    ttl: Mapped[int] = mapped_column(BigInteger, index=True)
