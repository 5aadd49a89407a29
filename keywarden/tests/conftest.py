from __future__ import annotations

import pytest

from keywarden.core.config import get_settings
from keywarden.persistence.db import build_engine, build_sessionmaker, create_schema
from keywarden.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def isolate_settings_and_telemetry(monkeypatch) -> None:
    # Settings are cached process-wide; keep env overrides from leaking between tests.
    monkeypatch.setenv("NOTIFY_ADAPTER", "none")
    monkeypatch.setenv("IAM_OLD_KEY_DELETE_DELAY_S", "0")
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_telemetry()


@pytest.fixture
async def session_factory():
    # Fresh in-memory schema per test; StaticPool keeps the single connection alive.
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await create_schema(engine)
    yield build_sessionmaker(engine)
    await engine.dispose()
