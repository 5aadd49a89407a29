from __future__ import annotations

import pytest

from keywarden.services.reload import ServiceReloader, reload_targets
from keywarden.tests.utils.builders import FIXED_NOW, FrozenClock, build_settings, make_credential


class _FakeEcs:
    def __init__(self) -> None:
        self.calls: list[dict] = []

    def update_service(self, **kwargs):
        self.calls.append(kwargs)
        return {}


class _FakeLambda:
    def __init__(self, fail: bool = False) -> None:
        self.updated: list[dict] = []
        self._fail = fail

    def get_function_configuration(self, FunctionName):
        if self._fail:
            raise RuntimeError("function not found")
        return {"Environment": {"Variables": {"STAGE": "prod"}}}

    def update_function_configuration(self, **kwargs):
        self.updated.append(kwargs)
        return {}


def test_reload_targets_fold_legacy_keys() -> None:
    credential = make_credential(
        "t-1",
        metadata={
            "services": [{"type": "ecs", "cluster": "main", "service": "api"}],
            "lambda_function": "worker",
        },
    )
    assert reload_targets(credential) == [
        {"type": "ecs", "cluster": "main", "service": "api"},
        {"type": "lambda", "function": "worker"},
    ]


@pytest.mark.asyncio
async def test_reload_forces_ecs_deployment_and_bumps_lambda_env() -> None:
    ecs = _FakeEcs()
    lam = _FakeLambda()
    reloader = ServiceReloader(
        settings=build_settings(), ecs_client=ecs, lambda_client=lam, time_provider=FrozenClock()
    )
    credential = make_credential(
        "t-1", metadata={"ecs_cluster": "main", "ecs_service": "api", "lambda_function": "worker"}
    )

    results = await reloader.reload_dependent_services(credential)

    assert [result.success for result in results] == [True, True]
    assert ecs.calls == [{"cluster": "main", "service": "api", "forceNewDeployment": True}]
    variables = lam.updated[0]["Environment"]["Variables"]
    assert variables == {"STAGE": "prod", "CREDENTIALS_UPDATED_AT": FIXED_NOW.isoformat()}


@pytest.mark.asyncio
async def test_reload_failures_are_reported_not_raised() -> None:
    reloader = ServiceReloader(settings=build_settings(), ecs_client=_FakeEcs(), lambda_client=_FakeLambda(fail=True))
    credential = make_credential(
        "t-1",
        metadata={"services": [{"type": "kubernetes", "name": "api"}], "lambda_function": "worker"},
    )

    results = await reloader.reload_dependent_services(credential)

    assert [(result.kind, result.success) for result in results] == [("kubernetes", False), ("lambda", False)]
    assert results[1].error == "function not found"
