from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import Any, Callable
from uuid import uuid4

from keywarden.core.config import Settings, get_settings
from keywarden.core.errors import BackupCreationError, BackupNotFound, RollbackError
from keywarden.domain.entities import Credential, CredentialBackup, utc_now
from keywarden.persistence.stores import BackupStore
from keywarden.services.audit import AuditSink
from keywarden.services.notifications import AlertSeverity, NotificationChannel, dispatch_alert
from keywarden.services.resilience import RetryPolicy, call_with_deadline, default_retry_policy
from keywarden.services.rotation.strategies import StrategyRegistry


logger = logging.getLogger(__name__)


class BackupManager:
    def __init__(
        self,
        backups: BackupStore,
        registry: StrategyRegistry,
        audit: AuditSink,
        notifier: NotificationChannel | None = None,
        *,
        settings: Settings | None = None,
        policy: RetryPolicy | None = None,
        time_provider: Callable[[], datetime] = utc_now,
    ) -> None:
        self._backups = backups
        self._registry = registry
        self._audit = audit
        self._notifier = notifier
        self._settings = settings or get_settings()
        self._policy = policy or default_retry_policy(self._settings)
        self._now = time_provider

    async def create_credential_backup(
        self, credential: Credential, current_value: dict[str, Any]
    ) -> CredentialBackup:
        # Must succeed before any external mutation; callers abort the rotation otherwise.
        now = self._now()
        backup = CredentialBackup(
            id=uuid4().hex,
            tenant_id=credential.tenant_id,
            credential_id=credential.id,
            credential_name=credential.name,
            credential_type=credential.type,
            old_value=dict(current_value),
            backup_timestamp=now,
            expires_at=now + timedelta(hours=self._settings.backup_retention_hours),
        )
        try:
            # At most one active backup per credential: the fresh snapshot supersedes older ones.
            for stale in await self._backups.list_active_for_credential(
                credential.tenant_id, credential.id, now
            ):
                await self._backups.delete(stale.id)
            await self._backups.put(backup)
        except Exception as exc:
            logger.error(
                "credential_backup_failed tenant_id=%s credential_id=%s",
                credential.tenant_id,
                credential.id,
                exc_info=exc,
            )
            raise BackupCreationError(f"Backup for credential {credential.id} could not be written") from exc
        logger.info(
            "credential_backup_created tenant_id=%s credential_id=%s backup_id=%s",
            credential.tenant_id,
            credential.id,
            backup.id,
        )
        return backup

    async def rollback_credential(self, backup_id: str, credential: Credential) -> CredentialBackup:
        now = self._now()
        try:
            backup = await self._backups.get(backup_id, credential.tenant_id)
        except Exception as exc:
            # An unreadable backup is a failed rollback, never a silent abort.
            raise RollbackError(f"Backup {backup_id} could not be loaded: {exc}") from exc
        if backup is None or backup.credential_id != credential.id:
            raise BackupNotFound(f"Backup {backup_id} not found for credential {credential.id}")
        if backup.is_expired(now):
            raise BackupNotFound(f"Backup {backup_id} expired at {backup.expires_at.isoformat()}")
        try:
            backend = self._registry.for_credential(credential)
            await call_with_deadline(
                lambda: backend.restore(credential, backup.old_value),
                timeout_s=self._policy.timeout_s,
                integration=f"restore.{credential.type.value}",
            )
        except RollbackError:
            raise
        except Exception as exc:
            raise RollbackError(f"Restore of credential {credential.id} failed: {exc}") from exc

        logger.warning(
            "credential_rolled_back tenant_id=%s credential_id=%s backup_id=%s",
            credential.tenant_id,
            credential.id,
            backup.id,
        )
        await self._audit.append(
            "rollback",
            f"Rolled back {credential.name} to backup {backup.id}",
            {
                "credential_id": credential.id,
                "credential_type": credential.type.value,
                "backup_id": backup.id,
                "backup_timestamp": backup.backup_timestamp,
            },
            tenant_id=credential.tenant_id,
        )
        await dispatch_alert(
            self._notifier,
            AlertSeverity.WARNING,
            f"Credential rolled back: {credential.name}",
            f"Rotation of {credential.name} ({credential.id}) failed and was rolled back "
            f"to the value captured at {backup.backup_timestamp.isoformat()}.",
        )
        return backup

    async def cleanup_expired_backups(self) -> int:
        # Best-effort sweep; failures are logged and never raised.
        now = self._now()
        try:
            expired = await self._backups.list_expired(now, self._settings.backup_cleanup_batch_size)
        except Exception as exc:  # noqa: BLE001 - maintenance must not crash the worker
            logger.warning("backup_cleanup_scan_failed", exc_info=exc)
            return 0
        deleted = 0
        for backup in expired:
            try:
                if await self._backups.delete(backup.id):
                    deleted += 1
            except Exception as exc:  # noqa: BLE001 - keep sweeping the remaining backups
                logger.warning("backup_cleanup_delete_failed backup_id=%s", backup.id, exc_info=exc)
        if deleted:
            logger.info("backup_cleanup_completed deleted=%s", deleted)
        return deleted
