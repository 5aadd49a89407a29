from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from keywarden.core.errors import (
    PermanentPolicyFailure,
    PlanLimitExceeded,
    RotationInProgress,
    StoreError,
    TenantIsolationViolation,
    TransientExternalFailure,
)
from keywarden.domain.entities import (
    AttemptStatus,
    CredentialStatus,
    CredentialType,
    Plan,
    RotationAttempt,
    RotationOutcome,
)
from keywarden.providers.secrets.aws import encode_secret_string
from keywarden.services.notifications import AlertSeverity
from keywarden.services.telemetry import counter_value
from keywarden.tests.utils.builders import FIXED_NOW, build_harness, make_credential, tenant


DB_SECRET = {"username": "app", "password": "old-password", "host": "db.internal", "port": 5432}


@pytest.mark.asyncio
async def test_expired_database_password_rotates_on_first_attempt() -> None:
    harness = build_harness()
    ctx = tenant()
    credential = await harness.add(
        make_credential(
            ctx.tenant_id,
            expires_in_days=-5,
            status=CredentialStatus.EXPIRED,
            last_rotated_at=FIXED_NOW - timedelta(days=95),
        ),
        DB_SECRET,
    )

    outcome = await harness.engine.rotate_credential(ctx, credential.id)

    assert outcome.outcome == RotationOutcome.SUCCESS
    assert outcome.attempts == 1
    statuses = await harness.attempt_statuses(credential)
    assert statuses == ["in_progress", "success"]

    stored = await harness.stores.credentials.get(credential.id, ctx.tenant_id)
    assert stored.status == CredentialStatus.ACTIVE
    assert stored.expires_in_days == 90
    assert stored.last_rotated_at == FIXED_NOW

    secret = harness.secrets.peek(credential.metadata["secret_id"])
    assert secret["password"] != "old-password"
    assert len(secret["password"]) == 32
    assert {key: secret[key] for key in ("username", "host", "port")} == {
        "username": "app",
        "host": "db.internal",
        "port": 5432,
    }
    assert harness.sleep.calls == []
    assert harness.notifier.severities() == [AlertSeverity.INFO]


@pytest.mark.asyncio
async def test_backup_is_written_before_rotation_and_holds_old_value() -> None:
    harness = build_harness()
    ctx = tenant()
    credential = await harness.add(make_credential(ctx.tenant_id), DB_SECRET)

    outcome = await harness.engine.rotate_credential(ctx, credential.id)

    backup = await harness.stores.backups.get(outcome.backup_id, ctx.tenant_id)
    assert backup is not None
    assert backup.old_value == DB_SECRET
    assert backup.expires_at == FIXED_NOW + timedelta(hours=24)
    attempts = await harness.stores.attempts.list_for_credential(ctx.tenant_id, credential.id)
    assert {attempt.backup_id for attempt in attempts} == {backup.id}


@pytest.mark.asyncio
async def test_transient_failures_exhaust_retries_and_roll_back() -> None:
    harness = build_harness()
    ctx = tenant()
    credential = await harness.add(
        make_credential(ctx.tenant_id, credential_type=CredentialType.API_TOKEN, expires_in_days=3),
        {"token": "old-token"},
    )
    harness.secrets.fail_next_puts(*(TransientExternalFailure("Throttling") for _ in range(3)))

    outcome = await harness.engine.rotate_credential(ctx, credential.id)

    assert outcome.outcome == RotationOutcome.ROLLED_BACK
    assert outcome.attempts == 3
    assert "Throttling" in (outcome.error or "")
    statuses = await harness.attempt_statuses(credential)
    assert statuses.count("failed") == 3
    assert statuses[-1] == "rolled_back"
    assert harness.sleep.calls == [2.0, 4.0]
    assert harness.secrets.peek(credential.metadata["secret_id"]) == {"token": "old-token"}

    rollbacks = await harness.services.audit.list_entries(ctx.tenant_id, action="rollback")
    assert len(rollbacks) == 1
    stored = await harness.stores.credentials.get(credential.id, ctx.tenant_id)
    assert stored.status == CredentialStatus.ACTIVE
    assert stored.last_rotated_at is None
    assert AlertSeverity.WARNING in harness.notifier.severities()


@pytest.mark.asyncio
async def test_permanent_failure_skips_remaining_attempts() -> None:
    harness = build_harness()
    ctx = tenant()
    credential = await harness.add(
        make_credential(ctx.tenant_id, credential_type=CredentialType.API_TOKEN),
        {"token": "old-token"},
    )
    harness.secrets.fail_next_puts(PermanentPolicyFailure("AccessDeniedException"))

    outcome = await harness.engine.rotate_credential(ctx, credential.id)

    assert outcome.outcome == RotationOutcome.ROLLED_BACK
    assert outcome.attempts == 1
    assert harness.sleep.calls == []
    assert await harness.attempt_statuses(credential) == ["in_progress", "failed", "rolled_back"]


@pytest.mark.asyncio
async def test_database_secret_without_username_is_a_permanent_failure() -> None:
    harness = build_harness()
    ctx = tenant()
    credential = await harness.add(make_credential(ctx.tenant_id), {"password": "old-password"})

    outcome = await harness.engine.rotate_credential(ctx, credential.id)

    assert outcome.outcome == RotationOutcome.ROLLED_BACK
    assert outcome.attempts == 1
    assert "CredentialValidationError" in (outcome.error or "")
    assert harness.secrets.peek(credential.metadata["secret_id"]) == {"password": "old-password"}


@pytest.mark.asyncio
async def test_failed_rollback_raises_critical_alert_and_requires_manual_intervention() -> None:
    harness = build_harness()
    ctx = tenant()
    credential = await harness.add(
        make_credential(ctx.tenant_id, credential_type=CredentialType.GITHUB_TOKEN),
        {"token": "old-token"},
    )
    harness.secrets.fail_next_puts(
        TransientExternalFailure("ServiceUnavailable"),
        TransientExternalFailure("ServiceUnavailable"),
        TransientExternalFailure("ServiceUnavailable"),
        PermanentPolicyFailure("AccessDeniedException"),
    )

    outcome = await harness.engine.rotate_credential(ctx, credential.id)

    assert outcome.outcome == RotationOutcome.MANUAL_INTERVENTION
    assert "rollback failed" in (outcome.error or "")
    assert (await harness.attempt_statuses(credential))[-1] == AttemptStatus.ROLLBACK_FAILED.value
    critical = [item for item in harness.notifier.sent if item[0] == AlertSeverity.CRITICAL]
    assert len(critical) == 1
    assert credential.name in critical[0][1]
    assert counter_value("rotations_manual_intervention_total") == 1


@pytest.mark.asyncio
async def test_unreadable_backup_during_rollback_requires_manual_intervention() -> None:
    harness = build_harness()
    ctx = tenant()
    credential = await harness.add(
        make_credential(ctx.tenant_id, credential_type=CredentialType.API_TOKEN),
        {"token": "old-token"},
    )
    harness.secrets.fail_next_puts(*(TransientExternalFailure("Throttling") for _ in range(3)))

    async def _unreadable_get(backup_id: str, tenant_id: str):
        raise StoreError("backup_get failed")

    harness.stores.backups.get = _unreadable_get

    outcome = await harness.engine.rotate_credential(ctx, credential.id)

    assert outcome.outcome == RotationOutcome.MANUAL_INTERVENTION
    assert "backup_get failed" in (outcome.error or "")
    assert (await harness.attempt_statuses(credential))[-1] == AttemptStatus.ROLLBACK_FAILED.value
    critical = [item for item in harness.notifier.sent if item[0] == AlertSeverity.CRITICAL]
    assert len(critical) == 1
    stored = await harness.stores.credentials.get(credential.id, ctx.tenant_id)
    assert stored.status == CredentialStatus.ACTIVE


@pytest.mark.asyncio
async def test_plain_string_token_is_replaced_not_wrapped() -> None:
    harness = build_harness()
    ctx = tenant()
    credential = await harness.add(
        make_credential(ctx.tenant_id, credential_type=CredentialType.API_TOKEN),
        {"value": "sk-live-OLDTOKEN"},
    )

    outcome = await harness.engine.rotate_credential(ctx, credential.id)

    assert outcome.outcome == RotationOutcome.SUCCESS
    secret = harness.secrets.peek(credential.metadata["secret_id"])
    assert set(secret) == {"value"}
    assert secret["value"] != "sk-live-OLDTOKEN"
    assert len(secret["value"]) == 64
    assert encode_secret_string(secret) == secret["value"]


@pytest.mark.asyncio
async def test_backup_failure_aborts_before_any_mutation() -> None:
    harness = build_harness()
    ctx = tenant()
    credential = await harness.add(
        make_credential(ctx.tenant_id, credential_type=CredentialType.API_TOKEN),
        {"token": "old-token"},
    )

    async def _broken_put(backup) -> None:
        raise RuntimeError("backup table unavailable")

    harness.stores.backups.put = _broken_put

    outcome = await harness.engine.rotate_credential(ctx, credential.id)

    assert outcome.outcome == RotationOutcome.FAILED
    assert "BackupCreationError" in (outcome.error or "")
    assert harness.secrets.writes == []
    assert await harness.attempt_statuses(credential) == []
    stored = await harness.stores.credentials.get(credential.id, ctx.tenant_id)
    assert stored.status == CredentialStatus.ACTIVE


@pytest.mark.asyncio
async def test_concurrent_rotation_of_same_credential_is_refused() -> None:
    harness = build_harness()
    ctx = tenant()
    credential = await harness.add(make_credential(ctx.tenant_id), DB_SECRET)
    original_get = harness.secrets.get_secret

    async def _slow_get(secret_id: str):
        # Yield to the loop so the second rotation starts while the first is mid-flight.
        await asyncio.sleep(0)
        return await original_get(secret_id)

    harness.secrets.get_secret = _slow_get

    results = await asyncio.gather(
        harness.engine.rotate_credential(ctx, credential.id),
        harness.engine.rotate_credential(ctx, credential.id),
        return_exceptions=True,
    )

    refused = [item for item in results if isinstance(item, RotationInProgress)]
    completed = [item for item in results if not isinstance(item, BaseException)]
    assert len(refused) == 1
    assert len(completed) == 1
    assert completed[0].outcome == RotationOutcome.SUCCESS
    assert (await harness.attempt_statuses(credential)).count("success") == 1


@pytest.mark.asyncio
async def test_in_flight_attempt_record_blocks_rotation_until_stale() -> None:
    harness = build_harness()
    ctx = tenant()
    credential = await harness.add(make_credential(ctx.tenant_id), DB_SECRET)
    await harness.stores.attempts.append(
        RotationAttempt(
            attempt_id="a-1",
            run_id="other-worker-run",
            tenant_id=ctx.tenant_id,
            credential_id=credential.id,
            status=AttemptStatus.IN_PROGRESS,
            retry_count=0,
            start_time=FIXED_NOW,
            recorded_at=FIXED_NOW,
        )
    )

    with pytest.raises(RotationInProgress):
        await harness.engine.rotate_credential(ctx, credential.id)

    harness.clock.advance(hours=2)
    outcome = await harness.engine.rotate_credential(ctx, credential.id)
    assert outcome.outcome == RotationOutcome.SUCCESS


@pytest.mark.asyncio
async def test_recent_rotating_status_blocks_rotation() -> None:
    harness = build_harness()
    ctx = tenant()
    credential = await harness.add(
        make_credential(ctx.tenant_id, status=CredentialStatus.ROTATING), DB_SECRET
    )

    with pytest.raises(RotationInProgress):
        await harness.engine.validate_credential_before_rotation(ctx, credential.id)


@pytest.mark.asyncio
async def test_rotation_of_another_tenants_credential_is_denied_and_audited() -> None:
    harness = build_harness()
    owner = tenant("tenant-a")
    intruder = tenant("tenant-b")
    credential = await harness.add(make_credential(owner.tenant_id), DB_SECRET)

    with pytest.raises(TenantIsolationViolation):
        await harness.engine.rotate_credential(intruder, credential.id)

    denied = await harness.services.audit.list_entries(intruder.tenant_id, action="security.access_denied")
    assert len(denied) == 1
    assert harness.secrets.writes == []


@pytest.mark.asyncio
async def test_monthly_rotation_quota_is_enforced() -> None:
    harness = build_harness()
    ctx = tenant(plan=Plan.FREE)
    for index in range(10):
        await harness.stores.attempts.append(
            RotationAttempt(
                attempt_id=f"used-{index}",
                run_id=f"run-{index}",
                tenant_id=ctx.tenant_id,
                credential_id=f"other-{index}",
                status=AttemptStatus.SUCCESS,
                retry_count=0,
                start_time=FIXED_NOW,
                recorded_at=FIXED_NOW,
            )
        )
    credential = await harness.add(make_credential(ctx.tenant_id), DB_SECRET)

    with pytest.raises(PlanLimitExceeded) as excinfo:
        await harness.engine.rotate_credential(ctx, credential.id)

    assert excinfo.value.limit_type == "rotations_per_month"
    assert (excinfo.value.current, excinfo.value.limit) == (10, 10)
    assert harness.secrets.writes == []


@pytest.mark.asyncio
async def test_rotating_status_uses_store_clock_for_staleness() -> None:
    harness = build_harness()
    ctx = tenant()
    credential = await harness.add(make_credential(ctx.tenant_id), DB_SECRET)
    await harness.stores.credentials.update(credential.id, ctx.tenant_id, {"status": CredentialStatus.ROTATING})

    stored = await harness.stores.credentials.get(credential.id, ctx.tenant_id)
    assert stored.updated_at == FIXED_NOW
    with pytest.raises(RotationInProgress):
        await harness.engine.validate_credential_before_rotation(ctx, credential.id)

    harness.clock.advance(hours=2)
    validated = await harness.engine.validate_credential_before_rotation(ctx, credential.id)
    assert validated.id == credential.id
