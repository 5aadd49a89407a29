from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keywarden.domain.entities import CredentialBackup, CredentialType
from keywarden.domain.models import CredentialBackupRow
from keywarden.persistence.guards import add_tenant_filter, require_tenant_id
from keywarden.persistence.repos.base import translate_store_errors
from keywarden.services.sealing import SecretSealer


class SqlBackupStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], sealer: SecretSealer) -> None:
        self._session_factory = session_factory
        self._sealer = sealer

    def _to_entity(self, row: CredentialBackupRow) -> CredentialBackup:
        return CredentialBackup(
            id=row.id,
            tenant_id=row.tenant_id,
            credential_id=row.credential_id,
            credential_name=row.credential_name,
            credential_type=CredentialType(row.credential_type),
            old_value=self._sealer.open(row.old_value_sealed),
            backup_timestamp=row.backup_timestamp,
            expires_at=row.expires_at,
        )

    async def put(self, backup: CredentialBackup) -> None:
        require_tenant_id(backup.tenant_id)
        row = CredentialBackupRow(
            id=backup.id,
            tenant_id=backup.tenant_id,
            credential_id=backup.credential_id,
            credential_name=backup.credential_name,
            credential_type=backup.credential_type.value,
            old_value_sealed=self._sealer.seal(backup.old_value),
            backup_timestamp=backup.backup_timestamp,
            expires_at=backup.expires_at,
        )
        with translate_store_errors("backup_put"):
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()

    async def get(self, backup_id: str, tenant_id: str) -> CredentialBackup | None:
        stmt = add_tenant_filter(select(CredentialBackupRow), CredentialBackupRow, tenant_id).where(
            CredentialBackupRow.id == backup_id
        )
        with translate_store_errors("backup_get"):
            async with self._session_factory() as session:
                row = (await session.execute(stmt)).scalar_one_or_none()
        return self._to_entity(row) if row is not None else None

    async def list_active_for_credential(
        self, tenant_id: str, credential_id: str, now: datetime
    ) -> list[CredentialBackup]:
        stmt = (
            add_tenant_filter(select(CredentialBackupRow), CredentialBackupRow, tenant_id)
            .where(
                CredentialBackupRow.credential_id == credential_id,
                CredentialBackupRow.expires_at > now,
            )
            .order_by(CredentialBackupRow.backup_timestamp)
        )
        with translate_store_errors("backup_list_active"):
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        return [self._to_entity(row) for row in rows]

    async def list_expired(self, now: datetime, limit: int) -> list[CredentialBackup]:
        # System-wide sweep over the expiry index; not a tenant data read.
        stmt = (
            select(CredentialBackupRow)
            .where(CredentialBackupRow.expires_at <= now)
            .order_by(CredentialBackupRow.expires_at)
            .limit(limit)
        )
        with translate_store_errors("backup_list_expired"):
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        return [self._to_entity(row) for row in rows]

    async def delete(self, backup_id: str) -> bool:
        with translate_store_errors("backup_delete"):
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(CredentialBackupRow).where(CredentialBackupRow.id == backup_id)
                )
                await session.commit()
        return bool(result.rowcount)
