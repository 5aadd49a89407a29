from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keywarden.domain.entities import AuditLogEntry
from keywarden.domain.models import AuditLogRow
from keywarden.persistence.guards import add_tenant_filter
from keywarden.persistence.repos.base import translate_store_errors


def _to_entity(row: AuditLogRow) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        tenant_id=row.tenant_id,
        timestamp=row.timestamp,
        action=row.action,
        description=row.description,
        metadata=dict(row.metadata_json or {}),
        ttl=row.ttl,
    )


class SqlAuditStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(self, entry: AuditLogEntry) -> None:
        row = AuditLogRow(
            id=entry.id,
            tenant_id=entry.tenant_id,
            timestamp=entry.timestamp,
            action=entry.action,
            description=entry.description,
            metadata_json=dict(entry.metadata),
            ttl=entry.ttl,
        )
        with translate_store_errors("audit_append"):
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()

    async def list(
        self,
        tenant_id: str,
        *,
        action: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        stmt = add_tenant_filter(select(AuditLogRow), AuditLogRow, tenant_id)
        if action is not None:
            stmt = stmt.where(AuditLogRow.action == action)
        if since is not None:
            stmt = stmt.where(AuditLogRow.timestamp >= since)
        stmt = stmt.order_by(AuditLogRow.seq.desc()).limit(limit)
        with translate_store_errors("audit_list"):
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        return [_to_entity(row) for row in rows]

    async def purge_expired(self, now_epoch: int) -> int:
        # Time-based only; content never selects rows for deletion.
        with translate_store_errors("audit_purge"):
            async with self._session_factory() as session:
                result = await session.execute(delete(AuditLogRow).where(AuditLogRow.ttl <= now_epoch))
                await session.commit()
        return int(result.rowcount or 0)
