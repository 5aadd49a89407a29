from __future__ import annotations

import logging
from typing import Literal

from keywarden.services.audit import AuditSink
from keywarden.services.backup import BackupManager


logger = logging.getLogger(__name__)


MaintenanceTask = Literal["cleanup_backups", "prune_audit"]


async def cleanup_expired_backups(backups: BackupManager, audit: AuditSink) -> int:
    # Runs independently of in-flight rotations; an active backup is never past expires_at.
    deleted = await backups.cleanup_expired_backups()
    if deleted:
        await audit.append(
            "backup_cleanup",
            f"Deleted {deleted} expired credential backups",
            {"deleted": deleted},
        )
    return deleted


async def prune_audit_entries(audit: AuditSink) -> int:
    # Purge is driven by ttl alone, never by entry content.
    try:
        purged = await audit.purge_expired()
    except Exception as exc:  # noqa: BLE001 - maintenance must not crash the worker
        logger.warning("audit_prune_failed", exc_info=exc)
        return 0
    logger.info("audit_prune_completed purged=%s", purged)
    return purged


async def run_maintenance_task(task: MaintenanceTask, backups: BackupManager, audit: AuditSink) -> int:
    if task == "cleanup_backups":
        return await cleanup_expired_backups(backups, audit)
    if task == "prune_audit":
        return await prune_audit_entries(audit)
    raise ValueError(f"Unsupported maintenance task: {task}")
