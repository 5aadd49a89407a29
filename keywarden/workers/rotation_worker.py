from __future__ import annotations

import logging
from typing import Any

from arq import cron, create_pool
from arq.connections import RedisSettings

from keywarden.core.config import get_settings
from keywarden.core.logging import configure_logging
from keywarden.domain.entities import TenantContext
from keywarden.services.factory import RotationServices, build_default_services
from keywarden.services.maintenance import cleanup_expired_backups, prune_audit_entries
from keywarden.services.tenancy import parse_plan


logger = logging.getLogger(__name__)


def tenant_from_payload(payload: dict[str, Any]) -> TenantContext:
    # Scheduler payloads carry the tenant id and plan resolved at enqueue time.
    tenant_id = str(payload.get("tenant_id") or "")
    if not tenant_id:
        raise ValueError("tenant payload requires tenant_id")
    return TenantContext(
        tenant_id=tenant_id,
        user_id=str(payload.get("user_id") or "scheduler"),
        email=payload.get("email"),
        plan=parse_plan(payload.get("plan")),
        permissions=frozenset(payload.get("permissions") or ()),
    )


async def run_rotation_cycle_job(ctx, tenant: dict[str, Any]) -> dict[str, Any]:
    services: RotationServices = ctx["services"]
    summary = await services.engine.run_rotation_cycle(tenant_from_payload(tenant))
    logger.info("rotation_cycle_job_completed tenant_id=%s cycle_id=%s", summary.tenant_id, summary.cycle_id)
    return summary.to_dict()


async def cleanup_backups_job(ctx) -> int:
    services: RotationServices = ctx["services"]
    return await cleanup_expired_backups(services.backups, services.audit)


async def prune_audit_job(ctx) -> int:
    services: RotationServices = ctx["services"]
    return await prune_audit_entries(services.audit)


async def enqueue_rotation_cycle(tenant: dict[str, Any]) -> str | None:
    # Used by the external scheduler and the CLI to hand a tenant cycle to the worker.
    settings = get_settings()
    pool = await create_pool(RedisSettings.from_dsn(settings.redis_url))
    try:
        job = await pool.enqueue_job(
            "run_rotation_cycle_job",
            tenant,
            _queue_name=settings.rotation_queue_name,
        )
    finally:
        await pool.aclose()
    return job.job_id if job is not None else None


async def _startup(ctx) -> None:
    configure_logging()
    ctx["services"] = build_default_services()


async def _shutdown(ctx) -> None:
    ctx.pop("services", None)


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.rotation_queue_name
    # Rotation retries happen inside the job; arq must not replay a half-finished cycle.
    max_tries = 1
    max_jobs = max(1, int(settings.rotation_max_concurrency))
    functions = [run_rotation_cycle_job]
    cron_jobs = [
        cron(cleanup_backups_job, minute={0}),
        cron(prune_audit_job, hour={3}, minute={30}),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
