from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from keywarden.core.errors import StoreError
from keywarden.domain.entities import (
    AttemptStatus,
    AuditLogEntry,
    CredentialBackup,
    CredentialFilter,
    CredentialStatus,
    CredentialType,
    RotationAttempt,
)
from keywarden.domain.models import CredentialBackupRow
from keywarden.persistence.repos.attempts import SqlAttemptLog
from keywarden.persistence.repos.audit import SqlAuditStore
from keywarden.persistence.repos.backups import SqlBackupStore
from keywarden.persistence.repos.credentials import SqlCredentialStore
from keywarden.services.sealing import SecretSealer
from keywarden.tests.utils.builders import FIXED_NOW, make_credential


def _attempt(attempt_id: str, run_id: str, status: AttemptStatus, *, tenant_id: str = "t-1", recorded_at=FIXED_NOW):
    return RotationAttempt(
        attempt_id=attempt_id,
        run_id=run_id,
        tenant_id=tenant_id,
        credential_id="cred-1",
        status=status,
        retry_count=0,
        start_time=FIXED_NOW,
        recorded_at=recorded_at,
    )


@pytest.mark.asyncio
async def test_credential_store_is_tenant_scoped(session_factory) -> None:
    store = SqlCredentialStore(session_factory)
    credential = await store.put(make_credential("tenant-a", metadata={"secret_id": "db/app"}))

    assert (await store.get(credential.id, "tenant-a")).metadata == {"secret_id": "db/app"}
    assert await store.get(credential.id, "tenant-b") is None
    assert await store.update(credential.id, "tenant-b", {"status": CredentialStatus.ROTATING}) is None
    assert await store.delete(credential.id, "tenant-b") is False
    with pytest.raises(StoreError):
        await store.put(make_credential("tenant-b", credential_id=credential.id))
    assert await store.count("tenant-a") == 1


@pytest.mark.asyncio
async def test_credential_due_query_and_update(session_factory) -> None:
    store = SqlCredentialStore(session_factory)
    soon = await store.put(make_credential("t-1", expires_in_days=5))
    later = await store.put(make_credential("t-1", expires_in_days=80))
    flagged = await store.put(make_credential("t-1", expires_in_days=80, status=CredentialStatus.EXPIRING))
    rotating = await store.put(make_credential("t-1", expires_in_days=1, status=CredentialStatus.ROTATING))

    due = await store.query("t-1", CredentialFilter(due_within_days=30))
    assert [item.id for item in due] == [rotating.id, soon.id, flagged.id]
    unlocked = await store.query("t-1", CredentialFilter(due_within_days=30, exclude_rotating=True))
    assert rotating.id not in {item.id for item in unlocked}

    updated = await store.update(
        later.id,
        "t-1",
        {"status": CredentialStatus.ACTIVE, "expires_in_days": 90, "last_rotated_at": FIXED_NOW},
    )
    assert updated.expires_in_days == 90
    assert updated.last_rotated_at == FIXED_NOW
    with pytest.raises(ValueError):
        await store.update(later.id, "t-1", {"tenant_id": "t-2"})


@pytest.mark.asyncio
async def test_find_by_external_ref(session_factory) -> None:
    store = SqlCredentialStore(session_factory)
    await store.put(
        make_credential("t-1", credential_type=CredentialType.IAM_KEY, source="iam", external_ref="AKIA1")
    )

    assert (await store.find_by_external_ref("t-1", "iam", "AKIA1")).external_ref == "AKIA1"
    assert await store.find_by_external_ref("t-2", "iam", "AKIA1") is None
    assert await store.find_by_external_ref("t-1", "ssm", "AKIA1") is None


@pytest.mark.asyncio
async def test_backup_store_seals_values_and_sweeps_expired(session_factory) -> None:
    store = SqlBackupStore(session_factory, SecretSealer("integration-key"))
    backup = CredentialBackup(
        id="b-1",
        tenant_id="t-1",
        credential_id="cred-1",
        credential_name="db",
        credential_type=CredentialType.DATABASE_PASSWORD,
        old_value={"username": "app", "password": "hunter2"},
        backup_timestamp=FIXED_NOW,
        expires_at=FIXED_NOW + timedelta(hours=24),
    )
    await store.put(backup)

    async with session_factory() as session:
        sealed = (await session.execute(select(CredentialBackupRow.old_value_sealed))).scalar_one()
    assert "hunter2" not in sealed

    assert (await store.get("b-1", "t-1")).old_value == backup.old_value
    assert await store.get("b-1", "t-2") is None
    assert len(await store.list_active_for_credential("t-1", "cred-1", FIXED_NOW)) == 1
    assert await store.list_expired(FIXED_NOW, 10) == []

    later = FIXED_NOW + timedelta(hours=24)
    assert await store.list_active_for_credential("t-1", "cred-1", later) == []
    assert [item.id for item in await store.list_expired(later, 10)] == ["b-1"]
    assert await store.delete("b-1") is True
    assert await store.delete("b-1") is False


@pytest.mark.asyncio
async def test_attempt_log_is_append_only_and_tracks_in_flight_runs(session_factory) -> None:
    log = SqlAttemptLog(session_factory)
    await log.append(_attempt("a-1", "run-1", AttemptStatus.IN_PROGRESS))
    assert await log.has_in_flight("t-1", "cred-1") is True
    assert await log.has_in_flight("t-1", "cred-1", stale_before=FIXED_NOW + timedelta(hours=1)) is False

    await log.append(_attempt("a-2", "run-1", AttemptStatus.SUCCESS))
    assert await log.has_in_flight("t-1", "cred-1") is False
    assert [item.status for item in await log.list_for_credential("t-1", "cred-1")] == [
        AttemptStatus.IN_PROGRESS,
        AttemptStatus.SUCCESS,
    ]
    with pytest.raises(StoreError):
        await log.append(_attempt("a-2", "run-1", AttemptStatus.SUCCESS))

    await log.append(_attempt("a-3", "run-2", AttemptStatus.SUCCESS, tenant_id="t-2"))
    assert await log.count_successes_since("t-1", FIXED_NOW - timedelta(days=1)) == 1
    assert await log.count_successes_since("t-1", FIXED_NOW + timedelta(seconds=1)) == 0


@pytest.mark.asyncio
async def test_audit_store_orders_newest_first_and_purges_by_ttl(session_factory) -> None:
    store = SqlAuditStore(session_factory)
    ttl = int((FIXED_NOW + timedelta(days=90)).timestamp())
    for index, action in enumerate(["rotation", "rollback", "rotation"]):
        await store.append(
            AuditLogEntry(
                id=f"e-{index}",
                tenant_id="t-1",
                timestamp=FIXED_NOW + timedelta(minutes=index),
                action=action,
                description=f"entry {index}",
                metadata={"index": index},
                ttl=ttl + index,
            )
        )
    await store.append(
        AuditLogEntry(
            id="system",
            tenant_id=None,
            timestamp=FIXED_NOW,
            action="backup_cleanup",
            description="sweep",
            metadata={},
            ttl=ttl,
        )
    )

    assert [entry.id for entry in await store.list("t-1")] == ["e-2", "e-1", "e-0"]
    assert [entry.id for entry in await store.list("t-1", action="rotation", limit=1)] == ["e-2"]
    assert [entry.metadata for entry in await store.list("t-1", since=FIXED_NOW + timedelta(minutes=2))] == [
        {"index": 2}
    ]
    assert await store.purge_expired(ttl) == 2
    assert [entry.id for entry in await store.list("t-1")] == ["e-2", "e-1"]
