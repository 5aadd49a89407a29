from __future__ import annotations

from typing import Any

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keywarden.core.errors import StoreError
from keywarden.domain.entities import (
    CREDENTIAL_PATCHABLE_FIELDS,
    Credential,
    CredentialFilter,
    CredentialStatus,
    CredentialType,
    utc_now,
)
from keywarden.domain.models import CredentialRow
from keywarden.persistence.guards import add_tenant_filter, require_tenant_id
from keywarden.persistence.repos.base import translate_store_errors


def _to_entity(row: CredentialRow) -> Credential:
    return Credential(
        id=row.id,
        tenant_id=row.tenant_id,
        name=row.name,
        type=CredentialType(row.type),
        environment=row.environment,
        source=row.source,
        status=CredentialStatus(row.status),
        last_rotated_at=row.last_rotated_at,
        expires_in_days=row.expires_in_days,
        metadata=dict(row.metadata_json or {}),
        description=row.description,
        external_ref=row.external_ref,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _apply(row: CredentialRow, credential: Credential) -> None:
    row.tenant_id = credential.tenant_id
    row.name = credential.name
    row.type = credential.type.value
    row.environment = credential.environment
    row.source = credential.source
    row.status = credential.status.value
    row.last_rotated_at = credential.last_rotated_at
    row.expires_in_days = credential.expires_in_days
    row.metadata_json = dict(credential.metadata)
    row.description = credential.description
    row.external_ref = credential.external_ref
    row.created_at = credential.created_at
    row.updated_at = credential.updated_at


class SqlCredentialStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, credential_id: str, tenant_id: str) -> Credential | None:
        stmt = add_tenant_filter(select(CredentialRow), CredentialRow, tenant_id).where(
            CredentialRow.id == credential_id
        )
        with translate_store_errors("credential_get"):
            async with self._session_factory() as session:
                row = (await session.execute(stmt)).scalar_one_or_none()
        return _to_entity(row) if row is not None else None

    async def put(self, credential: Credential) -> Credential:
        require_tenant_id(credential.tenant_id)
        with translate_store_errors("credential_put"):
            async with self._session_factory() as session:
                row = await session.get(CredentialRow, credential.id)
                if row is not None and row.tenant_id != credential.tenant_id:
                    raise StoreError(f"credential id collision across tenants: {credential.id}")
                if row is None:
                    row = CredentialRow(id=credential.id)
                    session.add(row)
                _apply(row, credential)
                await session.commit()
        return credential

    async def update(self, credential_id: str, tenant_id: str, patch: dict[str, Any]) -> Credential | None:
        unknown = set(patch) - CREDENTIAL_PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported credential fields: {sorted(unknown)}")
        stmt = add_tenant_filter(select(CredentialRow), CredentialRow, tenant_id).where(
            CredentialRow.id == credential_id
        )
        with translate_store_errors("credential_update"):
            async with self._session_factory() as session:
                row = (await session.execute(stmt)).scalar_one_or_none()
                if row is None:
                    return None
                for key, value in patch.items():
                    if key == "metadata":
                        row.metadata_json = dict(value)
                    elif key == "status":
                        row.status = CredentialStatus(value).value
                    else:
                        setattr(row, key, value)
                row.updated_at = utc_now()
                await session.commit()
                return _to_entity(row)

    async def query(self, tenant_id: str, filter: CredentialFilter | None = None) -> list[Credential]:
        filter = filter or CredentialFilter()
        stmt = add_tenant_filter(select(CredentialRow), CredentialRow, tenant_id)
        if filter.types is not None:
            stmt = stmt.where(CredentialRow.type.in_([item.value for item in filter.types]))
        if filter.statuses is not None:
            stmt = stmt.where(CredentialRow.status.in_([item.value for item in filter.statuses]))
        if filter.exclude_rotating:
            stmt = stmt.where(CredentialRow.status != CredentialStatus.ROTATING.value)
        if filter.source is not None:
            stmt = stmt.where(CredentialRow.source == filter.source)
        if filter.external_ref is not None:
            stmt = stmt.where(CredentialRow.external_ref == filter.external_ref)
        if filter.due_within_days is not None:
            stmt = stmt.where(
                or_(
                    CredentialRow.expires_in_days < filter.due_within_days,
                    CredentialRow.status.in_(
                        [CredentialStatus.EXPIRING.value, CredentialStatus.EXPIRED.value]
                    ),
                )
            )
        stmt = stmt.order_by(CredentialRow.expires_in_days, CredentialRow.id)
        if filter.limit is not None:
            stmt = stmt.limit(filter.limit)
        with translate_store_errors("credential_query"):
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        return [_to_entity(row) for row in rows]

    async def delete(self, credential_id: str, tenant_id: str) -> bool:
        stmt = add_tenant_filter(delete(CredentialRow), CredentialRow, tenant_id).where(
            CredentialRow.id == credential_id
        )
        with translate_store_errors("credential_delete"):
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        return bool(result.rowcount)

    async def count(self, tenant_id: str) -> int:
        stmt = add_tenant_filter(select(func.count(CredentialRow.id)), CredentialRow, tenant_id)
        with translate_store_errors("credential_count"):
            async with self._session_factory() as session:
                return int((await session.execute(stmt)).scalar_one())

    async def find_by_external_ref(
        self, tenant_id: str, source: str, external_ref: str
    ) -> Credential | None:
        rows = await self.query(tenant_id, CredentialFilter(source=source, external_ref=external_ref, limit=1))
        return rows[0] if rows else None
