from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
import logging
from typing import Any, Callable
from uuid import uuid4

from keywarden.core.config import Settings, get_settings
from keywarden.core.errors import (
    PermanentPolicyFailure,
    PlanLimitExceeded,
    RotationInProgress,
    TenantIsolationViolation,
)
from keywarden.domain.entities import (
    Credential,
    CredentialFilter,
    CredentialOutcome,
    CredentialStatus,
    RotationCycleSummary,
    RotationOutcome,
    StrategyResult,
    TenantContext,
    utc_now,
)
from keywarden.persistence.stores import AttemptLog, CredentialStore
from keywarden.providers.secrets.base import SecretBackend
from keywarden.services.audit import AuditSink
from keywarden.services.backup import BackupManager
from keywarden.services.inventory import InventoryService
from keywarden.services.notifications import AlertSeverity, NotificationChannel, dispatch_alert
from keywarden.services.reload import ServiceReloader
from keywarden.services.resilience import RetryPolicy, call_with_deadline, default_retry_policy
from keywarden.services.rotation.attempts import RotationAttemptRunner, describe_error
from keywarden.services.rotation.strategies import StrategyRegistry
from keywarden.services.tenancy import QuotaGuard, validate_tenant_access


logger = logging.getLogger(__name__)


# Refusals raised before anything is mutated; a cycle reports these as "rejected".
_REJECTIONS = (RotationInProgress, PlanLimitExceeded, TenantIsolationViolation, PermanentPolicyFailure)


class RotationEngine:
    def __init__(
        self,
        *,
        credentials: CredentialStore,
        attempts: AttemptLog,
        registry: StrategyRegistry,
        backups: BackupManager,
        runner: RotationAttemptRunner,
        quota: QuotaGuard,
        audit: AuditSink,
        notifier: NotificationChannel | None = None,
        reloader: ServiceReloader | None = None,
        inventory: InventoryService | None = None,
        settings: Settings | None = None,
        policy: RetryPolicy | None = None,
        time_provider: Callable[[], datetime] = utc_now,
    ) -> None:
        self._credentials = credentials
        self._attempts = attempts
        self._registry = registry
        self._backups = backups
        self._runner = runner
        self._quota = quota
        self._audit = audit
        self._notifier = notifier
        self._reloader = reloader
        self._inventory = inventory
        self._settings = settings or get_settings()
        self._policy = policy or default_retry_policy(self._settings)
        self._now = time_provider
        # Soft per-credential lock within this process; check-and-add never awaits.
        self._claims: set[tuple[str, str]] = set()
        # Deferred finalize work (IAM old-key deletion) runs outside quota and cycle slots.
        self._followups: set[asyncio.Task] = set()

    async def validate_credential_before_rotation(self, ctx: TenantContext, credential_id: str) -> Credential:
        credential = await validate_tenant_access(self._credentials, ctx, credential_id, audit=self._audit)
        stale_before = self._now() - timedelta(seconds=self._settings.rotation_lock_stale_after_s)
        if await self._attempts.has_in_flight(ctx.tenant_id, credential_id, stale_before=stale_before):
            raise RotationInProgress(f"Rotation already in progress for credential {credential_id}")
        if credential.status == CredentialStatus.ROTATING and credential.updated_at >= stale_before:
            raise RotationInProgress(f"Credential {credential_id} is marked rotating")
        return credential

    async def rotate_credential(
        self, ctx: TenantContext, credential_id: str, *, run_id: str | None = None
    ) -> CredentialOutcome:
        """Rotate one credential end to end.

        Refusals (another rotation in flight, quota, tenant mismatch, an
        unsupported type) raise before anything is touched. Once the backup
        exists the outcome is always returned, never raised.
        """
        key = (ctx.tenant_id, credential_id)
        if key in self._claims:
            raise RotationInProgress(f"Rotation already in progress for credential {credential_id}")
        self._claims.add(key)
        try:
            return await self._rotate_claimed(ctx, credential_id, run_id or uuid4().hex)
        finally:
            self._claims.discard(key)

    async def _rotate_claimed(self, ctx: TenantContext, credential_id: str, run_id: str) -> CredentialOutcome:
        credential = await self.validate_credential_before_rotation(ctx, credential_id)
        backend = self._registry.for_credential(credential)
        async with self._quota.reserve_rotation(ctx):
            try:
                current = await call_with_deadline(
                    lambda: backend.current_value(credential),
                    timeout_s=self._policy.timeout_s,
                    integration=f"current_value.{credential.type.value}",
                )
                backup = await self._backups.create_credential_backup(credential, current)
            except Exception as exc:  # noqa: BLE001 - current-value and backup failures abort before mutation
                return await self._aborted(credential, run_id, exc)

            previous_status = credential.status
            try:
                await self._credentials.update(credential.id, ctx.tenant_id, {"status": CredentialStatus.ROTATING})
            except Exception as exc:  # noqa: BLE001 - nothing external has changed yet
                return await self._aborted(credential, run_id, exc)

            run = await self._runner.execute_rotation_with_retry(
                credential,
                lambda: backend.rotate(credential),
                backup.id,
                run_id=run_id,
            )
            if run.outcome == RotationOutcome.SUCCESS and run.result is not None:
                await self._complete_success(credential, backend, run.result)
            else:
                await self._restore_status(credential, previous_status)

        outcome = CredentialOutcome(
            credential_id=credential.id,
            outcome=run.outcome,
            error=run.error,
            attempts=run.attempts,
            run_id=run.run_id,
            backup_id=backup.id,
        )
        await self._audit.append(
            "rotation",
            f"Rotation of {credential.name}: {run.outcome.value}",
            {
                "credential_id": credential.id,
                "credential_type": credential.type.value,
                "run_id": run.run_id,
                "outcome": run.outcome.value,
                "attempts": run.attempts,
                "backup_id": backup.id,
                "error": run.error,
            },
            tenant_id=ctx.tenant_id,
        )
        return outcome

    async def _aborted(self, credential: Credential, run_id: str, exc: BaseException) -> CredentialOutcome:
        error = describe_error(exc)
        logger.error(
            "rotation_aborted_before_mutation tenant_id=%s credential_id=%s",
            credential.tenant_id,
            credential.id,
            exc_info=exc,
        )
        await self._audit.append(
            "rotation",
            f"Rotation of {credential.name} aborted before any change",
            {
                "credential_id": credential.id,
                "credential_type": credential.type.value,
                "run_id": run_id,
                "outcome": RotationOutcome.FAILED.value,
                "error": error,
            },
            tenant_id=credential.tenant_id,
        )
        return CredentialOutcome(credential_id=credential.id, outcome=RotationOutcome.FAILED, error=error, run_id=run_id)

    async def _complete_success(self, credential: Credential, backend: SecretBackend, result: StrategyResult) -> None:
        patch: dict[str, Any] = {
            "last_rotated_at": self._now(),
            "status": CredentialStatus.ACTIVE,
            "expires_in_days": self._settings.credential_max_age_days,
            "metadata": {**credential.metadata, **result.metadata_patch},
        }
        if result.external_ref:
            patch["external_ref"] = result.external_ref
        try:
            await self._credentials.update(credential.id, credential.tenant_id, patch)
        except Exception as exc:  # noqa: BLE001 - the secret is already rotated; the next scan repairs the record
            logger.error(
                "rotation_record_update_failed tenant_id=%s credential_id=%s",
                credential.tenant_id,
                credential.id,
                exc_info=exc,
            )
        logger.info("credential_rotated tenant_id=%s credential_id=%s", credential.tenant_id, credential.id)

        # Everything below is best-effort follow-up on an already successful rotation.
        self._schedule_finalize(credential, backend, result)
        if self._reloader is not None:
            await self._reloader.reload_dependent_services(credential)
        if self._settings.notify_on_success:
            await dispatch_alert(
                self._notifier,
                AlertSeverity.INFO,
                f"Credential rotated: {credential.name}",
                f"{credential.name} ({credential.type.value}, {credential.environment}) was rotated successfully.",
            )

    def _schedule_finalize(self, credential: Credential, backend: SecretBackend, result: StrategyResult) -> None:
        task = asyncio.create_task(self._finalize(credential, backend, result))
        self._followups.add(task)
        task.add_done_callback(self._followups.discard)

    async def _finalize(self, credential: Credential, backend: SecretBackend, result: StrategyResult) -> bool:
        try:
            await backend.finalize(credential, result)
        except Exception as exc:  # noqa: BLE001 - a superseded IAM key is purged before the next rotation creates one
            logger.warning("rotation_finalize_failed credential_id=%s", credential.id, exc_info=exc)
            await self._audit.append(
                "rotation_finalize",
                f"Post-rotation cleanup of {credential.name} failed",
                {"credential_id": credential.id, "ok": False, "error": describe_error(exc)},
                tenant_id=credential.tenant_id,
            )
            return False
        return True

    async def wait_for_followups(self) -> None:
        """Wait for every scheduled finalize step; they never raise."""
        while self._followups:
            pending = list(self._followups)
            self._followups.difference_update(pending)
            await asyncio.gather(*pending)

    async def _restore_status(self, credential: Credential, previous_status: CredentialStatus) -> None:
        try:
            await self._credentials.update(credential.id, credential.tenant_id, {"status": previous_status})
        except Exception as exc:  # noqa: BLE001 - a stale rotating status expires on its own
            logger.warning(
                "rotation_status_restore_failed credential_id=%s status=%s",
                credential.id,
                previous_status.value,
                exc_info=exc,
            )

    async def run_rotation_cycle(
        self,
        ctx: TenantContext,
        *,
        concurrency: int | None = None,
        cancel_event: asyncio.Event | None = None,
        refresh: bool = True,
    ) -> RotationCycleSummary:
        # Never raises: every failure lands in the summary.
        summary = RotationCycleSummary(cycle_id=uuid4().hex, tenant_id=ctx.tenant_id, started_at=self._now())
        try:
            if refresh and self._inventory is not None:
                await self._inventory.refresh_expiry(ctx)
            due = await self._credentials.query(
                ctx.tenant_id,
                CredentialFilter(due_within_days=self._settings.rotation_due_threshold_days),
            )
        except Exception as exc:  # noqa: BLE001 - the cycle reports instead of raising
            logger.error("rotation_cycle_query_failed tenant_id=%s", ctx.tenant_id, exc_info=exc)
            summary.error = describe_error(exc)
            summary.completed_at = self._now()
            return summary

        limit = max(1, concurrency or self._settings.rotation_max_concurrency)
        semaphore = asyncio.Semaphore(limit)
        logger.info(
            "rotation_cycle_started tenant_id=%s cycle_id=%s due=%s concurrency=%s",
            ctx.tenant_id,
            summary.cycle_id,
            len(due),
            limit,
        )

        async def _rotate_one(credential: Credential) -> CredentialOutcome:
            async with semaphore:
                # Cancellation is honored only between credentials, never mid-attempt.
                if cancel_event is not None and cancel_event.is_set():
                    return CredentialOutcome(credential_id=credential.id, outcome=RotationOutcome.CANCELLED)
                try:
                    return await self.rotate_credential(ctx, credential.id)
                except _REJECTIONS as exc:
                    logger.info(
                        "rotation_rejected tenant_id=%s credential_id=%s reason=%s",
                        ctx.tenant_id,
                        credential.id,
                        exc.__class__.__name__,
                    )
                    return CredentialOutcome(
                        credential_id=credential.id,
                        outcome=RotationOutcome.REJECTED,
                        error=describe_error(exc),
                    )
                except Exception as exc:  # noqa: BLE001 - one credential must not sink the cycle
                    logger.exception("rotation_unexpected_error credential_id=%s", credential.id)
                    return CredentialOutcome(
                        credential_id=credential.id,
                        outcome=RotationOutcome.FAILED,
                        error=describe_error(exc),
                    )

        summary.outcomes = list(await asyncio.gather(*(_rotate_one(credential) for credential in due)))
        await self.wait_for_followups()
        summary.cancelled = cancel_event is not None and cancel_event.is_set()
        summary.completed_at = self._now()
        counts = summary.counts()
        logger.info("rotation_cycle_completed tenant_id=%s cycle_id=%s counts=%s", ctx.tenant_id, summary.cycle_id, counts)
        await self._audit.append(
            "rotation_cycle",
            f"Rotation cycle processed {len(due)} credentials",
            {"cycle_id": summary.cycle_id, "cancelled": summary.cancelled, "counts": counts},
            tenant_id=ctx.tenant_id,
        )
        return summary
