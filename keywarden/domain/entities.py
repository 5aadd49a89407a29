from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class CredentialType(str, Enum):
    IAM_KEY = "iam_key"
    SECRETS_MANAGER_SECRET = "secrets_manager_secret"
    DATABASE_PASSWORD = "database_password"
    SMTP_PASSWORD = "smtp_password"
    API_TOKEN = "api_token"
    GITHUB_TOKEN = "github_token"


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    EXPIRING = "expiring"
    EXPIRED = "expired"
    ROTATING = "rotating"


class AttemptStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


TERMINAL_ATTEMPT_STATUSES = frozenset(
    {AttemptStatus.SUCCESS, AttemptStatus.ROLLED_BACK, AttemptStatus.ROLLBACK_FAILED}
)


class Plan(str, Enum):
    FREE = "free"
    PRO = "pro"
    BUSINESS = "business"
    ENTERPRISE = "enterprise"


class RotationOutcome(str, Enum):
    SUCCESS = "success"
    ROLLED_BACK = "failed_rolled_back"
    MANUAL_INTERVENTION = "failed_manual_intervention_required"
    # Aborted before any external mutation (backup or current-value fetch failed).
    FAILED = "failed"
    # Refused up front: quota, tenant access, in-flight rotation, unsupported type.
    REJECTED = "rejected"
    CANCELLED = "cancelled"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Credential:
    id: str
    tenant_id: str
    name: str
    type: CredentialType
    environment: str = "production"
    source: str = "manual"
    status: CredentialStatus = CredentialStatus.ACTIVE
    last_rotated_at: datetime | None = None
    expires_in_days: int = 90
    metadata: dict[str, Any] = field(default_factory=dict)
    description: str | None = None
    # Provider-native identifier (access key id, secret ARN, parameter name).
    external_ref: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)


# Fields callers may change through CredentialStore.update.
CREDENTIAL_PATCHABLE_FIELDS = frozenset(
    {
        "name",
        "environment",
        "status",
        "last_rotated_at",
        "expires_in_days",
        "metadata",
        "description",
        "external_ref",
    }
)


@dataclass(frozen=True)
class CredentialFilter:
    types: frozenset[CredentialType] | None = None
    statuses: frozenset[CredentialStatus] | None = None
    # Due = expires_in_days < N OR status in {expiring, expired}.
    due_within_days: int | None = None
    exclude_rotating: bool = False
    source: str | None = None
    external_ref: str | None = None
    limit: int | None = None


@dataclass(frozen=True)
class CredentialBackup:
    id: str
    tenant_id: str
    credential_id: str
    credential_name: str
    credential_type: CredentialType
    old_value: dict[str, Any]
    backup_timestamp: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass(frozen=True)
class RotationAttempt:
    attempt_id: str
    run_id: str
    tenant_id: str
    credential_id: str
    status: AttemptStatus
    retry_count: int
    start_time: datetime
    end_time: datetime | None = None
    error: str | None = None
    backup_id: str | None = None
    recorded_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class AuditLogEntry:
    id: str
    tenant_id: str | None
    timestamp: datetime
    action: str
    description: str
    metadata: dict[str, Any]
    # Epoch seconds after which the entry may be purged.
    ttl: int


@dataclass(frozen=True)
class TenantContext:
    tenant_id: str
    user_id: str
    email: str | None = None
    plan: Plan = Plan.FREE
    permissions: frozenset[str] = frozenset()


@dataclass(frozen=True)
class PlanLimits:
    # None means unlimited.
    max_credentials: int | None
    max_rotations_per_month: int | None
    features: frozenset[str]


@dataclass(frozen=True)
class LimitCheck:
    allowed: bool
    current: int
    limit: int | None


@dataclass(frozen=True)
class StrategyResult:
    # new_value is secret material and must never reach logs or audit metadata.
    new_value: dict[str, Any]
    metadata_patch: dict[str, Any] = field(default_factory=dict)
    # Set when rotation changes the provider-native identifier (IAM access key id).
    external_ref: str | None = None


@dataclass(frozen=True)
class CredentialOutcome:
    credential_id: str
    outcome: RotationOutcome
    error: str | None = None
    attempts: int = 0
    run_id: str | None = None
    backup_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == RotationOutcome.SUCCESS


@dataclass
class RotationCycleSummary:
    cycle_id: str
    tenant_id: str
    started_at: datetime
    completed_at: datetime | None = None
    outcomes: list[CredentialOutcome] = field(default_factory=list)
    cancelled: bool = False
    error: str | None = None

    def counts(self) -> dict[str, int]:
        totals = {outcome.value: 0 for outcome in RotationOutcome}
        for item in self.outcomes:
            totals[item.outcome.value] += 1
        return totals

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "tenant_id": self.tenant_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cancelled": self.cancelled,
            "error": self.error,
            "counts": self.counts(),
            "outcomes": [
                {
                    "credential_id": item.credential_id,
                    "outcome": item.outcome.value,
                    "error": item.error,
                    "attempts": item.attempts,
                    "run_id": item.run_id,
                }
                for item in self.outcomes
            ],
        }
