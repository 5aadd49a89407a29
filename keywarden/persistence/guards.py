from __future__ import annotations

from typing import Any, TypeVar

from sqlalchemy.sql import Delete, Select, Update

from keywarden.core.config import get_settings


Statement = TypeVar("Statement", Select, Update, Delete)


class TenantPredicateError(RuntimeError):
    """Tenant predicate required but the tenant id is missing."""


def require_tenant_id(tenant_id: str | None) -> None:
    # Enforce non-empty tenant identifiers when tenant guard checks are enabled.
    settings = get_settings()
    if not settings.tenant_guard_required:
        return
    if not tenant_id:
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")


def tenant_predicate(model: Any, tenant_id: str) -> Any:
    # Build tenant predicates through a single helper to guarantee guard coverage.
    require_tenant_id(tenant_id)
    return model.tenant_id == tenant_id


def add_tenant_filter(stmt: Statement, model: Any, tenant_id: str) -> Statement:
    # Every tenant-owned statement is narrowed here; repos never build a bare where().
    return stmt.where(tenant_predicate(model, tenant_id))
