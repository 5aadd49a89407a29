from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keywarden.core.config import Settings, get_settings
from keywarden.domain.entities import utc_now
from keywarden.persistence.db import get_sessionmaker
from keywarden.persistence.memory import (
    InMemoryAttemptLog,
    InMemoryAuditStore,
    InMemoryBackupStore,
    InMemoryCredentialStore,
)
from keywarden.persistence.repos.attempts import SqlAttemptLog
from keywarden.persistence.repos.audit import SqlAuditStore
from keywarden.persistence.repos.backups import SqlBackupStore
from keywarden.persistence.repos.credentials import SqlCredentialStore
from keywarden.persistence.stores import AttemptLog, AuditStore, BackupStore, CredentialStore
from keywarden.providers.secrets.aws import AwsIamClient, SecretsManagerClient, SsmParameterClient
from keywarden.services.audit import AuditSink
from keywarden.services.backup import BackupManager
from keywarden.services.inventory import InventoryService
from keywarden.services.notifications import NotificationChannel, get_notification_channel
from keywarden.services.reload import ServiceReloader
from keywarden.services.resilience import Sleeper, default_retry_policy
from keywarden.services.rotation.attempts import RotationAttemptRunner
from keywarden.services.rotation.engine import RotationEngine
from keywarden.services.rotation.strategies import BackendDependencies, build_strategy_registry
from keywarden.services.sealing import build_sealer
from keywarden.services.tenancy import QuotaGuard


@dataclass(frozen=True)
class Stores:
    credentials: CredentialStore
    backups: BackupStore
    attempts: AttemptLog
    audit: AuditStore


@dataclass(frozen=True)
class RotationServices:
    stores: Stores
    audit: AuditSink
    quota: QuotaGuard
    backups: BackupManager
    runner: RotationAttemptRunner
    inventory: InventoryService
    engine: RotationEngine


def build_sql_stores(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    settings: Settings | None = None,
) -> Stores:
    session_factory = session_factory or get_sessionmaker()
    return Stores(
        credentials=SqlCredentialStore(session_factory),
        backups=SqlBackupStore(session_factory, build_sealer(settings)),
        attempts=SqlAttemptLog(session_factory),
        audit=SqlAuditStore(session_factory),
    )


def build_memory_stores(time_provider: Callable[[], datetime] = utc_now) -> Stores:
    return Stores(
        credentials=InMemoryCredentialStore(time_provider),
        backups=InMemoryBackupStore(),
        attempts=InMemoryAttemptLog(),
        audit=InMemoryAuditStore(),
    )


def build_aws_dependencies(settings: Settings | None = None) -> BackendDependencies:
    settings = settings or get_settings()
    return BackendDependencies(
        stores={
            "secretsmanager": SecretsManagerClient(settings.aws_region),
            "ssm": SsmParameterClient(settings.aws_region),
        },
        iam=AwsIamClient(settings.aws_region),
        settings=settings,
    )


def build_rotation_services(
    stores: Stores,
    deps: BackendDependencies,
    *,
    settings: Settings | None = None,
    notifier: NotificationChannel | None = None,
    reloader: ServiceReloader | None = None,
    sleep: Sleeper = asyncio.sleep,
    time_provider: Callable[[], datetime] = utc_now,
) -> RotationServices:
    # Explicit wiring; every collaborator can be swapped for a fake.
    settings = settings or get_settings()
    notifier = notifier if notifier is not None else get_notification_channel(settings)
    policy = default_retry_policy(settings)
    registry = build_strategy_registry(deps)
    audit = AuditSink(stores.audit, settings=settings, time_provider=time_provider)
    quota = QuotaGuard(stores.credentials, stores.attempts, time_provider=time_provider)
    backups = BackupManager(
        stores.backups,
        registry,
        audit,
        notifier,
        settings=settings,
        policy=policy,
        time_provider=time_provider,
    )
    runner = RotationAttemptRunner(
        stores.attempts,
        backups,
        audit,
        notifier,
        policy=policy,
        sleep=sleep,
        time_provider=time_provider,
    )
    inventory = InventoryService(stores.credentials, quota, audit, settings=settings, time_provider=time_provider)
    engine = RotationEngine(
        credentials=stores.credentials,
        attempts=stores.attempts,
        registry=registry,
        backups=backups,
        runner=runner,
        quota=quota,
        audit=audit,
        notifier=notifier,
        reloader=reloader,
        inventory=inventory,
        settings=settings,
        policy=policy,
        time_provider=time_provider,
    )
    return RotationServices(
        stores=stores,
        audit=audit,
        quota=quota,
        backups=backups,
        runner=runner,
        inventory=inventory,
        engine=engine,
    )


def build_default_services(settings: Settings | None = None) -> RotationServices:
    # Production wiring: SQL stores, AWS backends, configured alert channel.
    settings = settings or get_settings()
    return build_rotation_services(
        build_sql_stores(settings=settings),
        build_aws_dependencies(settings),
        settings=settings,
        reloader=ServiceReloader(settings=settings),
    )
