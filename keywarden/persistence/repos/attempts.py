from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keywarden.core.errors import StoreError
from keywarden.domain.entities import AttemptStatus, RotationAttempt
from keywarden.domain.models import RotationAttemptRow
from keywarden.persistence.guards import add_tenant_filter, require_tenant_id
from keywarden.persistence.repos.base import translate_store_errors
from keywarden.persistence.stores import runs_in_flight


def _to_entity(row: RotationAttemptRow) -> RotationAttempt:
    return RotationAttempt(
        attempt_id=row.attempt_id,
        run_id=row.run_id,
        tenant_id=row.tenant_id,
        credential_id=row.credential_id,
        status=AttemptStatus(row.status),
        retry_count=row.retry_count,
        start_time=row.start_time,
        end_time=row.end_time,
        error=row.error,
        backup_id=row.backup_id,
        recorded_at=row.recorded_at,
    )


class SqlAttemptLog:
    # Insert-only; no code path updates or deletes attempt rows.
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(self, attempt: RotationAttempt) -> None:
        require_tenant_id(attempt.tenant_id)
        row = RotationAttemptRow(
            attempt_id=attempt.attempt_id,
            run_id=attempt.run_id,
            tenant_id=attempt.tenant_id,
            credential_id=attempt.credential_id,
            status=attempt.status.value,
            retry_count=attempt.retry_count,
            start_time=attempt.start_time,
            end_time=attempt.end_time,
            error=attempt.error,
            backup_id=attempt.backup_id,
            recorded_at=attempt.recorded_at,
        )
        try:
            with translate_store_errors("attempt_append"):
                async with self._session_factory() as session:
                    session.add(row)
                    await session.commit()
        except StoreError as exc:
            if isinstance(exc.__cause__, IntegrityError):
                raise StoreError(f"rotation attempt already recorded: {attempt.attempt_id}") from exc
            raise

    async def list_for_credential(self, tenant_id: str, credential_id: str) -> list[RotationAttempt]:
        stmt = (
            add_tenant_filter(select(RotationAttemptRow), RotationAttemptRow, tenant_id)
            .where(RotationAttemptRow.credential_id == credential_id)
            .order_by(RotationAttemptRow.seq)
        )
        with translate_store_errors("attempt_list"):
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        return [_to_entity(row) for row in rows]

    async def has_in_flight(
        self, tenant_id: str, credential_id: str, *, stale_before: datetime | None = None
    ) -> bool:
        attempts = await self.list_for_credential(tenant_id, credential_id)
        return bool(runs_in_flight(attempts, stale_before))

    async def count_successes_since(self, tenant_id: str, since: datetime) -> int:
        stmt = add_tenant_filter(
            select(func.count(RotationAttemptRow.seq)), RotationAttemptRow, tenant_id
        ).where(
            RotationAttemptRow.status == AttemptStatus.SUCCESS.value,
            RotationAttemptRow.recorded_at >= since,
        )
        with translate_store_errors("attempt_count_successes"):
            async with self._session_factory() as session:
                return int((await session.execute(stmt)).scalar_one())
