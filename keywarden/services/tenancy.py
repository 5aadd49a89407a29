from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
from typing import Any, AsyncIterator, Callable, Mapping

import jwt

from keywarden.core.config import Settings, get_settings
from keywarden.core.errors import PlanLimitExceeded, TenantIsolationViolation
from keywarden.domain.entities import (
    Credential,
    LimitCheck,
    Plan,
    PlanLimits,
    TenantContext,
    utc_now,
)
from keywarden.persistence.stores import AttemptLog, CredentialStore
from keywarden.services.audit import AuditSink


logger = logging.getLogger(__name__)

FEATURE_ALL = "all"

PLAN_LIMITS: dict[Plan, PlanLimits] = {
    Plan.FREE: PlanLimits(
        max_credentials=5,
        max_rotations_per_month=10,
        features=frozenset({"basic_rotation", "email_alerts"}),
    ),
    Plan.PRO: PlanLimits(
        max_credentials=25,
        max_rotations_per_month=100,
        features=frozenset({"basic_rotation", "email_alerts", "slack_alerts", "scheduled_rotation"}),
    ),
    Plan.BUSINESS: PlanLimits(
        max_credentials=100,
        max_rotations_per_month=500,
        features=frozenset(
            {
                "basic_rotation",
                "email_alerts",
                "slack_alerts",
                "scheduled_rotation",
                "multi_cloud",
                "api_access",
            }
        ),
    ),
    Plan.ENTERPRISE: PlanLimits(
        max_credentials=None,
        max_rotations_per_month=None,
        features=frozenset({FEATURE_ALL}),
    ),
}


def get_plan_limits(plan: Plan) -> PlanLimits:
    return PLAN_LIMITS.get(plan, PLAN_LIMITS[Plan.FREE])


def check_feature_access(ctx: TenantContext, feature: str) -> bool:
    features = get_plan_limits(ctx.plan).features
    return FEATURE_ALL in features or feature in features


def parse_plan(raw: Any) -> Plan:
    try:
        return Plan(str(raw or Plan.FREE.value).strip().lower())
    except ValueError:
        # Unknown plans get the most restrictive limits.
        logger.warning("tenant_plan_unknown plan=%s", raw)
        return Plan.FREE


def _parse_permissions(raw: Any) -> frozenset[str]:
    if not raw:
        return frozenset()
    if isinstance(raw, str):
        items = raw.split(",")
    else:
        items = [str(item) for item in raw]
    return frozenset(item.strip() for item in items if item.strip())


def resolve_tenant_context(claims: Mapping[str, Any] | None) -> TenantContext | None:
    # Claims are already verified upstream; this only maps them onto a tenant context.
    if not claims:
        return None
    tenant_id = claims.get("custom:tenant_id") or claims.get("sub")
    if not tenant_id:
        return None
    return TenantContext(
        tenant_id=str(tenant_id),
        user_id=str(claims.get("sub") or tenant_id),
        email=claims.get("email"),
        plan=parse_plan(claims.get("custom:plan")),
        permissions=_parse_permissions(claims.get("custom:permissions")),
    )


class JwtIdentityResolver:
    def __init__(
        self,
        *,
        key: str | None = None,
        algorithms: list[str] | None = None,
        audience: str | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._key = key if key is not None else settings.identity_jwt_key
        self._algorithms = algorithms or [
            item.strip() for item in settings.identity_jwt_algorithms.split(",") if item.strip()
        ]
        self._audience = audience if audience is not None else settings.identity_jwt_audience

    def resolve(self, token: str | None) -> TenantContext | None:
        if not token:
            return None
        try:
            if self._key:
                claims = jwt.decode(
                    token,
                    self._key,
                    algorithms=self._algorithms,
                    audience=self._audience,
                    options={"verify_aud": self._audience is not None},
                )
            else:
                # Signature verification happens at the gateway when no key is configured here.
                claims = jwt.decode(token, options={"verify_signature": False})
        except jwt.PyJWTError as exc:
            logger.info("identity_token_rejected reason=%s", exc.__class__.__name__)
            return None
        return resolve_tenant_context(claims)


def _month_start(now: datetime) -> datetime:
    # Normalize to the UTC month boundary for monthly quotas.
    return datetime(now.year, now.month, 1, tzinfo=timezone.utc)


def _limit_check(current: int, limit: int | None) -> LimitCheck:
    # None preserves unlimited semantics.
    if limit is None:
        return LimitCheck(allowed=True, current=current, limit=None)
    return LimitCheck(allowed=current < limit, current=current, limit=limit)


class QuotaGuard:
    """Plan quota checks for credential creation and rotation.

    Checks and the writes they guard run under a per-tenant lock, and rotation
    slots are reserved until the run's attempt records land. That closes the
    check-then-act race within one process; separate processes can still race.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        attempts: AttemptLog,
        *,
        time_provider: Callable[[], datetime] = utc_now,
    ) -> None:
        self._credentials = credentials
        self._attempts = attempts
        self._now = time_provider
        self._reserved: dict[str, int] = defaultdict(int)
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def check_credential_limit(self, ctx: TenantContext) -> LimitCheck:
        current = await self._credentials.count(ctx.tenant_id)
        return _limit_check(current, get_plan_limits(ctx.plan).max_credentials)

    async def check_rotation_limit(self, ctx: TenantContext) -> LimitCheck:
        used = await self._attempts.count_successes_since(ctx.tenant_id, _month_start(self._now()))
        current = used + self._reserved.get(ctx.tenant_id, 0)
        return _limit_check(current, get_plan_limits(ctx.plan).max_rotations_per_month)

    async def require_credential_capacity(self, ctx: TenantContext) -> LimitCheck:
        check = await self.check_credential_limit(ctx)
        if not check.allowed:
            raise PlanLimitExceeded("credentials", check.current, check.limit)
        return check

    async def require_rotation_capacity(self, ctx: TenantContext) -> LimitCheck:
        check = await self.check_rotation_limit(ctx)
        if not check.allowed:
            raise PlanLimitExceeded("rotations_per_month", check.current, check.limit)
        return check

    @asynccontextmanager
    async def credential_slot(self, ctx: TenantContext) -> AsyncIterator[LimitCheck]:
        # Hold the tenant lock across check and insert.
        async with self._locks[ctx.tenant_id]:
            yield await self.require_credential_capacity(ctx)

    @asynccontextmanager
    async def reserve_rotation(self, ctx: TenantContext) -> AsyncIterator[LimitCheck]:
        async with self._locks[ctx.tenant_id]:
            check = await self.require_rotation_capacity(ctx)
            self._reserved[ctx.tenant_id] += 1
        try:
            yield check
        finally:
            self._reserved[ctx.tenant_id] -= 1
            if self._reserved[ctx.tenant_id] <= 0:
                self._reserved.pop(ctx.tenant_id, None)


async def validate_tenant_access(
    store: CredentialStore,
    ctx: TenantContext,
    credential_id: str,
    *,
    audit: AuditSink | None = None,
) -> Credential:
    # Fail closed: a miss and a foreign record are indistinguishable to the caller.
    credential = await store.get(credential_id, ctx.tenant_id)
    if credential is not None and credential.tenant_id == ctx.tenant_id:
        return credential
    logger.warning(
        "tenant_access_denied tenant_id=%s user_id=%s credential_id=%s",
        ctx.tenant_id,
        ctx.user_id,
        credential_id,
    )
    if audit is not None:
        await audit.append(
            "security.access_denied",
            f"Access denied to credential {credential_id}",
            {"credential_id": credential_id, "user_id": ctx.user_id},
            tenant_id=ctx.tenant_id,
        )
    raise TenantIsolationViolation("Access denied")
