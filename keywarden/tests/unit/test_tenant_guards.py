from __future__ import annotations

import pytest
from sqlalchemy import select

from keywarden.domain.models import CredentialRow
from keywarden.persistence.guards import TenantPredicateError, add_tenant_filter, require_tenant_id
from keywarden.persistence.memory import InMemoryCredentialStore
from keywarden.core.config import get_settings


def test_missing_tenant_is_rejected() -> None:
    with pytest.raises(TenantPredicateError):
        require_tenant_id("")
    with pytest.raises(TenantPredicateError):
        require_tenant_id(None)


def test_guard_can_be_disabled(monkeypatch) -> None:
    monkeypatch.setenv("TENANT_GUARD_REQUIRED", "false")
    get_settings.cache_clear()
    require_tenant_id(None)


def test_tenant_filter_is_added_to_statement() -> None:
    stmt = add_tenant_filter(select(CredentialRow), CredentialRow, "tenant-a")
    compiled = stmt.compile(compile_kwargs={"literal_binds": True})
    assert "credentials.tenant_id = 'tenant-a'" in str(compiled)


@pytest.mark.asyncio
async def test_memory_store_refuses_blank_tenant() -> None:
    with pytest.raises(TenantPredicateError):
        await InMemoryCredentialStore().query("")
