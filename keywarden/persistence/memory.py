from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any, Callable

from keywarden.core.errors import StoreError
from keywarden.domain.entities import (
    CREDENTIAL_PATCHABLE_FIELDS,
    AttemptStatus,
    AuditLogEntry,
    Credential,
    CredentialBackup,
    CredentialFilter,
    CredentialStatus,
    RotationAttempt,
    utc_now,
)
from keywarden.persistence.guards import require_tenant_id
from keywarden.persistence.stores import runs_in_flight


# In-process stores mirror the SQL repos for tests and single-node local runs.


def credential_matches(credential: Credential, filter: CredentialFilter) -> bool:
    if filter.types is not None and credential.type not in filter.types:
        return False
    if filter.statuses is not None and credential.status not in filter.statuses:
        return False
    if filter.exclude_rotating and credential.status == CredentialStatus.ROTATING:
        return False
    if filter.source is not None and credential.source != filter.source:
        return False
    if filter.external_ref is not None and credential.external_ref != filter.external_ref:
        return False
    if filter.due_within_days is not None:
        overdue_status = credential.status in {CredentialStatus.EXPIRING, CredentialStatus.EXPIRED}
        if not (credential.expires_in_days < filter.due_within_days or overdue_status):
            return False
    return True


class InMemoryCredentialStore:
    def __init__(self, time_provider: Callable[[], datetime] = utc_now) -> None:
        self._rows: dict[str, Credential] = {}
        self._now = time_provider

    async def get(self, credential_id: str, tenant_id: str) -> Credential | None:
        require_tenant_id(tenant_id)
        row = self._rows.get(credential_id)
        if row is None or row.tenant_id != tenant_id:
            return None
        return replace(row, metadata=dict(row.metadata))

    async def put(self, credential: Credential) -> Credential:
        require_tenant_id(credential.tenant_id)
        existing = self._rows.get(credential.id)
        if existing is not None and existing.tenant_id != credential.tenant_id:
            raise StoreError(f"credential id collision across tenants: {credential.id}")
        self._rows[credential.id] = replace(credential, metadata=dict(credential.metadata))
        return credential

    async def update(self, credential_id: str, tenant_id: str, patch: dict[str, Any]) -> Credential | None:
        require_tenant_id(tenant_id)
        unknown = set(patch) - CREDENTIAL_PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported credential fields: {sorted(unknown)}")
        row = self._rows.get(credential_id)
        if row is None or row.tenant_id != tenant_id:
            return None
        updated = replace(row, **patch, updated_at=self._now())
        self._rows[credential_id] = updated
        return replace(updated, metadata=dict(updated.metadata))

    async def query(self, tenant_id: str, filter: CredentialFilter | None = None) -> list[Credential]:
        require_tenant_id(tenant_id)
        filter = filter or CredentialFilter()
        rows = [
            replace(row, metadata=dict(row.metadata))
            for row in self._rows.values()
            if row.tenant_id == tenant_id and credential_matches(row, filter)
        ]
        rows.sort(key=lambda row: (row.expires_in_days, row.id))
        if filter.limit is not None:
            rows = rows[: filter.limit]
        return rows

    async def delete(self, credential_id: str, tenant_id: str) -> bool:
        require_tenant_id(tenant_id)
        row = self._rows.get(credential_id)
        if row is None or row.tenant_id != tenant_id:
            return False
        del self._rows[credential_id]
        return True

    async def count(self, tenant_id: str) -> int:
        require_tenant_id(tenant_id)
        return sum(1 for row in self._rows.values() if row.tenant_id == tenant_id)

    async def find_by_external_ref(
        self, tenant_id: str, source: str, external_ref: str
    ) -> Credential | None:
        rows = await self.query(tenant_id, CredentialFilter(source=source, external_ref=external_ref, limit=1))
        return rows[0] if rows else None


class InMemoryBackupStore:
    def __init__(self) -> None:
        self._rows: dict[str, CredentialBackup] = {}

    async def put(self, backup: CredentialBackup) -> None:
        require_tenant_id(backup.tenant_id)
        self._rows[backup.id] = backup

    async def get(self, backup_id: str, tenant_id: str) -> CredentialBackup | None:
        require_tenant_id(tenant_id)
        row = self._rows.get(backup_id)
        if row is None or row.tenant_id != tenant_id:
            return None
        return row

    async def list_active_for_credential(
        self, tenant_id: str, credential_id: str, now: datetime
    ) -> list[CredentialBackup]:
        require_tenant_id(tenant_id)
        return [
            row
            for row in self._rows.values()
            if row.tenant_id == tenant_id and row.credential_id == credential_id and not row.is_expired(now)
        ]

    async def list_expired(self, now: datetime, limit: int) -> list[CredentialBackup]:
        expired = sorted(
            (row for row in self._rows.values() if row.is_expired(now)),
            key=lambda row: row.expires_at,
        )
        return expired[:limit]

    async def delete(self, backup_id: str) -> bool:
        return self._rows.pop(backup_id, None) is not None


class InMemoryAttemptLog:
    def __init__(self) -> None:
        self._rows: list[RotationAttempt] = []

    async def append(self, attempt: RotationAttempt) -> None:
        require_tenant_id(attempt.tenant_id)
        if any(row.attempt_id == attempt.attempt_id for row in self._rows):
            raise StoreError(f"rotation attempt already recorded: {attempt.attempt_id}")
        self._rows.append(attempt)

    async def list_for_credential(self, tenant_id: str, credential_id: str) -> list[RotationAttempt]:
        require_tenant_id(tenant_id)
        return [
            row for row in self._rows if row.tenant_id == tenant_id and row.credential_id == credential_id
        ]

    async def has_in_flight(
        self, tenant_id: str, credential_id: str, *, stale_before: datetime | None = None
    ) -> bool:
        attempts = await self.list_for_credential(tenant_id, credential_id)
        return bool(runs_in_flight(attempts, stale_before))

    async def count_successes_since(self, tenant_id: str, since: datetime) -> int:
        require_tenant_id(tenant_id)
        return sum(
            1
            for row in self._rows
            if row.tenant_id == tenant_id
            and row.status == AttemptStatus.SUCCESS
            and row.recorded_at >= since
        )


class InMemoryAuditStore:
    def __init__(self) -> None:
        self._rows: list[AuditLogEntry] = []

    async def append(self, entry: AuditLogEntry) -> None:
        self._rows.append(entry)

    async def list(
        self,
        tenant_id: str,
        *,
        action: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        require_tenant_id(tenant_id)
        rows = [
            row
            for row in self._rows
            if row.tenant_id == tenant_id
            and (action is None or row.action == action)
            and (since is None or row.timestamp >= since)
        ]
        # Newest first, matching the SQL repo ordering.
        rows.reverse()
        return rows[:limit]

    async def purge_expired(self, now_epoch: int) -> int:
        before = len(self._rows)
        self._rows = [row for row in self._rows if row.ttl > now_epoch]
        return before - len(self._rows)
