from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
import logging
from typing import Callable, Iterable
from uuid import uuid4

from keywarden.core.config import Settings, get_settings
from keywarden.core.errors import PlanLimitExceeded
from keywarden.domain.entities import (
    Credential,
    CredentialFilter,
    CredentialStatus,
    TenantContext,
    utc_now,
)
from keywarden.persistence.stores import CredentialStore
from keywarden.providers.discovery.base import CredentialSource, DiscoveredCredential
from keywarden.services.audit import AuditSink
from keywarden.services.tenancy import QuotaGuard


logger = logging.getLogger(__name__)


def compute_expiry(
    last_rotated_at: datetime,
    now: datetime,
    *,
    max_age_days: int | None = None,
    expiring_age_days: int | None = None,
) -> tuple[int, CredentialStatus]:
    settings = get_settings()
    max_age_days = settings.credential_max_age_days if max_age_days is None else max_age_days
    expiring_age_days = settings.credential_expiring_age_days if expiring_age_days is None else expiring_age_days
    # Whole days elapsed; timestamps in the future count as age zero.
    age = max(0, (now - last_rotated_at).days)
    if age > max_age_days:
        status = CredentialStatus.EXPIRED
    elif age > expiring_age_days:
        status = CredentialStatus.EXPIRING
    else:
        status = CredentialStatus.ACTIVE
    return max_age_days - age, status


@dataclass
class DiscoveryReport:
    discovered: int = 0
    created: int = 0
    updated: int = 0
    rejected: int = 0
    failed_sources: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "discovered": self.discovered,
            "created": self.created,
            "updated": self.updated,
            "rejected": self.rejected,
            "failed_sources": list(self.failed_sources),
        }


class InventoryService:
    def __init__(
        self,
        credentials: CredentialStore,
        quota: QuotaGuard,
        audit: AuditSink,
        *,
        settings: Settings | None = None,
        time_provider: Callable[[], datetime] = utc_now,
    ) -> None:
        self._credentials = credentials
        self._quota = quota
        self._audit = audit
        self._settings = settings or get_settings()
        self._now = time_provider

    def _expiry(self, credential: Credential, now: datetime) -> tuple[int, CredentialStatus]:
        return compute_expiry(
            credential.last_rotated_at or credential.created_at,
            now,
            max_age_days=self._settings.credential_max_age_days,
            expiring_age_days=self._settings.credential_expiring_age_days,
        )

    async def refresh_expiry(self, ctx: TenantContext) -> int:
        # Rotating credentials belong to an in-flight run and are left alone.
        now = self._now()
        credentials = await self._credentials.query(ctx.tenant_id, CredentialFilter(exclude_rotating=True))
        changed = 0
        for credential in credentials:
            expires_in_days, status = self._expiry(credential, now)
            if expires_in_days == credential.expires_in_days and status == credential.status:
                continue
            await self._credentials.update(
                credential.id,
                ctx.tenant_id,
                {"expires_in_days": expires_in_days, "status": status},
            )
            changed += 1
        logger.info(
            "credentials_scanned tenant_id=%s scanned=%s changed=%s", ctx.tenant_id, len(credentials), changed
        )
        await self._audit.append(
            "credentials_scanned",
            f"Scanned {len(credentials)} credentials",
            {"scanned": len(credentials), "changed": changed},
            tenant_id=ctx.tenant_id,
        )
        return changed

    async def register_credential(self, ctx: TenantContext, credential: Credential) -> tuple[Credential, bool]:
        """Insert or refresh a credential; returns the stored record and whether it was new.

        Records with an ``external_ref`` are matched on (tenant, source, ref) so
        rediscovery updates in place. New records count against the plan's
        credential limit and raise ``PlanLimitExceeded`` once it is reached.
        """
        now = self._now()
        credential = replace(credential, tenant_id=ctx.tenant_id)
        existing = None
        if credential.external_ref:
            existing = await self._credentials.find_by_external_ref(
                ctx.tenant_id, credential.source, credential.external_ref
            )
        if existing is not None:
            merged = replace(
                existing,
                name=credential.name,
                environment=credential.environment,
                description=credential.description or existing.description,
                metadata={**existing.metadata, **credential.metadata},
                last_rotated_at=credential.last_rotated_at or existing.last_rotated_at,
                updated_at=now,
            )
            if merged.status != CredentialStatus.ROTATING:
                expires_in_days, status = self._expiry(merged, now)
                merged = replace(merged, expires_in_days=expires_in_days, status=status)
            return await self._credentials.put(merged), False

        expires_in_days, status = self._expiry(credential, now)
        credential = replace(credential, expires_in_days=expires_in_days, status=status)
        async with self._quota.credential_slot(ctx):
            stored = await self._credentials.put(credential)
        logger.info(
            "credential_registered tenant_id=%s credential_id=%s type=%s",
            ctx.tenant_id,
            stored.id,
            stored.type.value,
        )
        return stored, True

    async def discover(self, ctx: TenantContext, sources: Iterable[CredentialSource]) -> DiscoveryReport:
        report = DiscoveryReport()
        for source in sources:
            try:
                items = await source.discover()
            except Exception as exc:  # noqa: BLE001 - one broken source must not hide the others
                logger.warning("discovery_source_failed tenant_id=%s source=%s", ctx.tenant_id, source.name, exc_info=exc)
                report.failed_sources.append(source.name)
                continue
            report.discovered += len(items)
            for item in items:
                try:
                    _, created = await self.register_credential(ctx, self._to_credential(ctx, item))
                except PlanLimitExceeded as exc:
                    report.rejected += 1
                    logger.info(
                        "discovery_plan_limit_reached tenant_id=%s current=%s limit=%s",
                        ctx.tenant_id,
                        exc.current,
                        exc.limit,
                    )
                    continue
                if created:
                    report.created += 1
                else:
                    report.updated += 1
        await self._audit.append(
            "discovery",
            f"Discovered {report.discovered} credentials",
            report.to_dict(),
            tenant_id=ctx.tenant_id,
        )
        return report

    def _to_credential(self, ctx: TenantContext, item: DiscoveredCredential) -> Credential:
        now = self._now()
        return Credential(
            id=uuid4().hex,
            tenant_id=ctx.tenant_id,
            name=item.name,
            type=item.type,
            environment=item.environment,
            source=item.source,
            last_rotated_at=item.last_rotated_at,
            metadata=dict(item.metadata),
            description=item.description,
            external_ref=item.external_ref,
            created_at=now,
            updated_at=now,
        )
