from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import Any, Callable
from uuid import uuid4

from keywarden.core.config import Settings, get_settings
from keywarden.domain.entities import AuditLogEntry, utc_now
from keywarden.persistence.stores import AuditStore


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = [
    "password",
    "secret_access_key",
    "secret_value",
    "secretstring",
    "token",
    "authorization",
    "api_key",
    "private_key",
    "old_value",
    "new_value",
]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class AuditSink:
    def __init__(
        self,
        store: AuditStore,
        *,
        settings: Settings | None = None,
        time_provider: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._now = time_provider

    async def append(
        self,
        action: str,
        description: str,
        metadata: dict[str, Any] | None = None,
        tenant_id: str | None = None,
    ) -> AuditLogEntry | None:
        # Write audit rows in a best-effort manner so a failed write never aborts a rotation.
        timestamp = self._now()
        expires = timestamp + timedelta(days=self._settings.audit_retention_days)
        entry = AuditLogEntry(
            id=uuid4().hex,
            tenant_id=tenant_id,
            timestamp=timestamp,
            action=action,
            description=description,
            metadata=sanitize_metadata(metadata or {}),
            ttl=int(expires.timestamp()),
        )
        try:
            await self._store.append(entry)
        except Exception as exc:  # noqa: BLE001 - audit writes are a non-critical side effect
            logger.warning(
                "audit_append_failed action=%s tenant_id=%s",
                action,
                tenant_id,
                exc_info=exc,
            )
            return None
        return entry

    async def list_entries(
        self,
        tenant_id: str,
        *,
        action: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        return await self._store.list(tenant_id, action=action, since=since, limit=limit)

    async def purge_expired(self) -> int:
        return await self._store.purge_expired(int(self._now().timestamp()))
