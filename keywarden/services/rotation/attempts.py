from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Awaitable, Callable
from uuid import uuid4

from keywarden.domain.entities import (
    AttemptStatus,
    Credential,
    RotationAttempt,
    RotationOutcome,
    StrategyResult,
    utc_now,
)
from keywarden.persistence.stores import AttemptLog
from keywarden.services.audit import AuditSink
from keywarden.services.backup import BackupManager
from keywarden.services.notifications import AlertSeverity, NotificationChannel, dispatch_alert
from keywarden.services.resilience import (
    RetryPolicy,
    Sleeper,
    call_with_deadline,
    default_retry_policy,
    is_retryable,
)
from keywarden.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


RotateFn = Callable[[], Awaitable[StrategyResult]]


@dataclass(frozen=True)
class RotationRunResult:
    run_id: str
    outcome: RotationOutcome
    attempts: int
    result: StrategyResult | None = None
    error: str | None = None


def describe_error(exc: BaseException) -> str:
    message = str(exc) or exc.__class__.__name__
    return f"{exc.__class__.__name__}: {message}"


class RotationAttemptRunner:
    """Drive one credential through the retry loop and, if needed, rollback.

    Each call is one run: up to ``max_attempts`` tries, each recorded as an
    ``in_progress`` record followed by ``success`` or ``failed``. Backoff sleeps
    ``base ** attempt`` seconds between tries and suspends only this task.
    Permanent failures skip the remaining tries. Exhausted runs roll back from
    the backup and end ``rolled_back``; a failed rollback ends
    ``rollback_failed`` and raises a critical alert.
    """

    def __init__(
        self,
        attempts: AttemptLog,
        backups: BackupManager,
        audit: AuditSink,
        notifier: NotificationChannel | None = None,
        *,
        policy: RetryPolicy | None = None,
        sleep: Sleeper = asyncio.sleep,
        time_provider: Callable[[], datetime] = utc_now,
    ) -> None:
        self._attempts = attempts
        self._backups = backups
        self._audit = audit
        self._notifier = notifier
        self._policy = policy or default_retry_policy()
        self._sleep = sleep
        self._now = time_provider

    async def _record(
        self,
        credential: Credential,
        run_id: str,
        status: AttemptStatus,
        retry_count: int,
        start_time: datetime,
        *,
        backup_id: str,
        end_time: datetime | None = None,
        error: str | None = None,
    ) -> None:
        attempt = RotationAttempt(
            attempt_id=uuid4().hex,
            run_id=run_id,
            tenant_id=credential.tenant_id,
            credential_id=credential.id,
            status=status,
            retry_count=retry_count,
            start_time=start_time,
            end_time=end_time,
            error=error,
            backup_id=backup_id,
            recorded_at=self._now(),
        )
        try:
            await self._attempts.append(attempt)
        except Exception as exc:  # noqa: BLE001 - a lost record must not flip a rotation's outcome
            logger.error(
                "rotation_attempt_record_failed credential_id=%s run_id=%s status=%s",
                credential.id,
                run_id,
                status.value,
                exc_info=exc,
            )
        await self._audit.append(
            "rotation_attempt",
            f"Rotation attempt for {credential.name}: {status.value}",
            {
                "credential_id": credential.id,
                "run_id": run_id,
                "attempt_id": attempt.attempt_id,
                "status": status.value,
                "retry_count": retry_count,
                "backup_id": backup_id,
                "error": error,
            },
            tenant_id=credential.tenant_id,
        )

    async def execute_rotation_with_retry(
        self,
        credential: Credential,
        rotate_fn: RotateFn,
        backup_id: str,
        *,
        run_id: str | None = None,
        policy: RetryPolicy | None = None,
    ) -> RotationRunResult:
        policy = policy or self._policy
        run_id = run_id or uuid4().hex
        max_attempts = max(1, policy.max_attempts)
        last_error: BaseException | None = None
        attempts_made = 0

        for attempt in range(1, max_attempts + 1):
            retry_count = attempt - 1
            start_time = self._now()
            attempts_made = attempt
            await self._record(
                credential, run_id, AttemptStatus.IN_PROGRESS, retry_count, start_time, backup_id=backup_id
            )
            try:
                result = await call_with_deadline(
                    rotate_fn,
                    timeout_s=policy.timeout_s,
                    integration=f"rotate.{credential.type.value}",
                )
            except Exception as exc:
                last_error = exc
                await self._record(
                    credential,
                    run_id,
                    AttemptStatus.FAILED,
                    retry_count,
                    start_time,
                    backup_id=backup_id,
                    end_time=self._now(),
                    error=describe_error(exc),
                )
                if not is_retryable(exc):
                    logger.warning(
                        "rotation_permanent_failure credential_id=%s run_id=%s attempt=%s",
                        credential.id,
                        run_id,
                        attempt,
                    )
                    break
                logger.info(
                    "rotation_attempt_failed credential_id=%s run_id=%s attempt=%s max_attempts=%s",
                    credential.id,
                    run_id,
                    attempt,
                    max_attempts,
                )
                if attempt < max_attempts:
                    await self._sleep(policy.backoff_s(attempt))
                continue

            await self._record(
                credential,
                run_id,
                AttemptStatus.SUCCESS,
                retry_count,
                start_time,
                backup_id=backup_id,
                end_time=self._now(),
            )
            increment_counter("rotations_succeeded_total")
            return RotationRunResult(run_id=run_id, outcome=RotationOutcome.SUCCESS, attempts=attempt, result=result)

        error = describe_error(last_error) if last_error is not None else "rotation failed"
        return await self._roll_back(credential, run_id, backup_id, attempts_made, error)

    async def _roll_back(
        self,
        credential: Credential,
        run_id: str,
        backup_id: str,
        attempts_made: int,
        error: str,
    ) -> RotationRunResult:
        retry_count = max(0, attempts_made - 1)
        await self._audit.append(
            "rotation_attempt",
            f"Rollback started for {credential.name}",
            {"credential_id": credential.id, "run_id": run_id, "status": "rollback_in_progress", "backup_id": backup_id},
            tenant_id=credential.tenant_id,
        )
        start_time = self._now()
        try:
            await self._backups.rollback_credential(backup_id, credential)
        except Exception as exc:  # noqa: BLE001 - every rollback failure must reach an operator
            rollback_error = describe_error(exc)
            await self._record(
                credential,
                run_id,
                AttemptStatus.ROLLBACK_FAILED,
                retry_count,
                start_time,
                backup_id=backup_id,
                end_time=self._now(),
                error=rollback_error,
            )
            increment_counter("rotations_manual_intervention_total")
            await dispatch_alert(
                self._notifier,
                AlertSeverity.CRITICAL,
                f"Manual intervention required: {credential.name}",
                f"Rotation of {credential.name} ({credential.id}, tenant {credential.tenant_id}) failed "
                f"after {attempts_made} attempt(s) and rollback from backup {backup_id} failed. "
                f"Rotation error: {error}. Rollback error: {rollback_error}.",
            )
            return RotationRunResult(
                run_id=run_id,
                outcome=RotationOutcome.MANUAL_INTERVENTION,
                attempts=attempts_made,
                error=f"{error}; rollback failed: {rollback_error}",
            )

        await self._record(
            credential,
            run_id,
            AttemptStatus.ROLLED_BACK,
            retry_count,
            start_time,
            backup_id=backup_id,
            end_time=self._now(),
            error=error,
        )
        increment_counter("rotations_rolled_back_total")
        return RotationRunResult(
            run_id=run_id,
            outcome=RotationOutcome.ROLLED_BACK,
            attempts=attempts_made,
            error=error,
        )
