from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from keywarden.persistence.memory import InMemoryAuditStore
from keywarden.services.audit import AuditSink, sanitize_metadata
from keywarden.tests.utils.builders import FIXED_NOW, FrozenClock, build_settings


def test_sanitize_metadata_redacts_nested_secret_fields() -> None:
    payload = {
        "credential_id": "c-1",
        "new_value": {"password": "hunter2"},
        "details": {"SecretString": "raw", "Authorization": "Bearer abc", "host": "db"},
        "items": [{"api_key": "k"}, {"name": "ok"}],
        "at": datetime(2026, 1, 1, tzinfo=timezone.utc),
    }

    sanitized = sanitize_metadata(payload)

    assert sanitized["credential_id"] == "c-1"
    assert sanitized["new_value"] == "[REDACTED]"
    assert sanitized["details"] == {"SecretString": "[REDACTED]", "Authorization": "[REDACTED]", "host": "db"}
    assert sanitized["items"] == [{"api_key": "[REDACTED]"}, {"name": "ok"}]
    assert sanitized["at"] == "2026-01-01T00:00:00+00:00"


@pytest.mark.asyncio
async def test_audit_entries_expire_after_retention_window() -> None:
    clock = FrozenClock()
    sink = AuditSink(InMemoryAuditStore(), settings=build_settings(audit_retention_days=30), time_provider=clock)

    entry = await sink.append("rotation", "Rotated", {"credential_id": "c-1"}, tenant_id="t-1")

    assert entry.ttl == int((FIXED_NOW + timedelta(days=30)).timestamp())
    clock.advance(days=29)
    assert await sink.purge_expired() == 0
    clock.advance(days=2)
    assert await sink.purge_expired() == 1
    assert await sink.list_entries("t-1") == []


@pytest.mark.asyncio
async def test_audit_listing_is_tenant_scoped_and_newest_first() -> None:
    clock = FrozenClock()
    sink = AuditSink(InMemoryAuditStore(), settings=build_settings(), time_provider=clock)
    await sink.append("rotation", "first", tenant_id="t-1")
    clock.advance(minutes=1)
    await sink.append("rollback", "second", tenant_id="t-1")
    await sink.append("rotation", "other tenant", tenant_id="t-2")

    entries = await sink.list_entries("t-1")

    assert [entry.description for entry in entries] == ["second", "first"]
    assert [entry.description for entry in await sink.list_entries("t-1", action="rotation")] == ["first"]


class _FailingAuditStore(InMemoryAuditStore):
    async def append(self, entry) -> None:
        raise RuntimeError("audit table locked")


@pytest.mark.asyncio
async def test_failed_audit_write_is_swallowed(caplog) -> None:
    sink = AuditSink(_FailingAuditStore(), settings=build_settings())

    assert await sink.append("rotation", "Rotated", tenant_id="t-1") is None
    assert "audit_append_failed" in caplog.text
