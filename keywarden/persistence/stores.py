from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from keywarden.domain.entities import (
    AuditLogEntry,
    Credential,
    CredentialBackup,
    CredentialFilter,
    RotationAttempt,
    TERMINAL_ATTEMPT_STATUSES,
)


class CredentialStore(Protocol):
    async def get(self, credential_id: str, tenant_id: str) -> Credential | None:
        ...

    async def put(self, credential: Credential) -> Credential:
        ...

    async def update(self, credential_id: str, tenant_id: str, patch: dict[str, Any]) -> Credential | None:
        ...

    async def query(self, tenant_id: str, filter: CredentialFilter | None = None) -> list[Credential]:
        ...

    async def delete(self, credential_id: str, tenant_id: str) -> bool:
        ...

    async def count(self, tenant_id: str) -> int:
        ...

    async def find_by_external_ref(
        self, tenant_id: str, source: str, external_ref: str
    ) -> Credential | None:
        ...


class BackupStore(Protocol):
    async def put(self, backup: CredentialBackup) -> None:
        ...

    async def get(self, backup_id: str, tenant_id: str) -> CredentialBackup | None:
        ...

    async def list_active_for_credential(
        self, tenant_id: str, credential_id: str, now: datetime
    ) -> list[CredentialBackup]:
        ...

    async def list_expired(self, now: datetime, limit: int) -> list[CredentialBackup]:
        ...

    async def delete(self, backup_id: str) -> bool:
        ...


class AttemptLog(Protocol):
    async def append(self, attempt: RotationAttempt) -> None:
        ...

    async def list_for_credential(self, tenant_id: str, credential_id: str) -> list[RotationAttempt]:
        ...

    async def has_in_flight(
        self, tenant_id: str, credential_id: str, *, stale_before: datetime | None = None
    ) -> bool:
        ...

    async def count_successes_since(self, tenant_id: str, since: datetime) -> int:
        ...


class AuditStore(Protocol):
    async def append(self, entry: AuditLogEntry) -> None:
        ...

    async def list(
        self,
        tenant_id: str,
        *,
        action: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        ...

    async def purge_expired(self, now_epoch: int) -> int:
        ...


def latest_by_run(attempts: list[RotationAttempt]) -> dict[str, RotationAttempt]:
    # Attempts are append-only; the last record per run reflects its current state.
    latest: dict[str, RotationAttempt] = {}
    for attempt in attempts:
        latest[attempt.run_id] = attempt
    return latest


def runs_in_flight(attempts: list[RotationAttempt], stale_before: datetime | None = None) -> list[str]:
    # A run is in flight until it writes a terminal record; runs silent since stale_before are abandoned.
    return [
        run_id
        for run_id, attempt in latest_by_run(attempts).items()
        if attempt.status not in TERMINAL_ATTEMPT_STATUSES
        and (stale_before is None or attempt.recorded_at >= stale_before)
    ]
