from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Awaitable, Callable

import boto3

from keywarden.core.config import Settings, get_settings
from keywarden.domain.entities import Credential, utc_now


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReloadResult:
    kind: str
    target: str
    success: bool
    error: str | None = None


def reload_targets(credential: Credential) -> list[dict[str, Any]]:
    # metadata["services"] lists consumers; flat legacy keys are folded into the same shape.
    metadata = credential.metadata
    targets = [dict(item) for item in metadata.get("services") or [] if isinstance(item, dict)]
    if metadata.get("ecs_service") and metadata.get("ecs_cluster"):
        targets.append({"type": "ecs", "cluster": metadata["ecs_cluster"], "service": metadata["ecs_service"]})
    if metadata.get("lambda_function"):
        targets.append({"type": "lambda", "function": metadata["lambda_function"]})
    return targets


class ServiceReloader:
    def __init__(
        self,
        *,
        settings: Settings | None = None,
        ecs_client: Any | None = None,
        lambda_client: Any | None = None,
        time_provider: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._ecs = ecs_client
        self._lambda = lambda_client
        self._now = time_provider
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[str]]] = {
            "ecs": self._reload_ecs,
            "lambda": self._reload_lambda,
        }

    def _ecs_client(self) -> Any:
        if self._ecs is None:
            self._ecs = boto3.client("ecs", region_name=self._settings.aws_region)
        return self._ecs

    def _lambda_client(self) -> Any:
        if self._lambda is None:
            self._lambda = boto3.client("lambda", region_name=self._settings.aws_region)
        return self._lambda

    async def _reload_ecs(self, target: dict[str, Any]) -> str:
        cluster = target.get("cluster")
        service = target.get("service")
        if not cluster or not service:
            raise ValueError("ecs target needs cluster and service")
        await asyncio.to_thread(
            self._ecs_client().update_service,
            cluster=cluster,
            service=service,
            forceNewDeployment=True,
        )
        return f"{cluster}/{service}"

    async def _reload_lambda(self, target: dict[str, Any]) -> str:
        function = target.get("function")
        if not function:
            raise ValueError("lambda target needs function")
        client = self._lambda_client()
        config = await asyncio.to_thread(client.get_function_configuration, FunctionName=function)
        variables = dict((config.get("Environment") or {}).get("Variables") or {})
        # Bumping an env var forces fresh execution environments that re-read the secret.
        variables["CREDENTIALS_UPDATED_AT"] = self._now().isoformat()
        await asyncio.to_thread(
            client.update_function_configuration,
            FunctionName=function,
            Environment={"Variables": variables},
        )
        return str(function)

    async def reload_dependent_services(self, credential: Credential) -> list[ReloadResult]:
        # Best-effort: the credential is already rotated, so nothing here raises.
        results: list[ReloadResult] = []
        for target in reload_targets(credential):
            kind = str(target.get("type") or "unknown")
            handler = self._handlers.get(kind)
            if handler is None:
                results.append(ReloadResult(kind=kind, target=str(target), success=False, error="unsupported type"))
                continue
            try:
                name = await handler(target)
            except Exception as exc:  # noqa: BLE001 - reload failures never fail a rotation
                logger.warning(
                    "service_reload_failed credential_id=%s kind=%s",
                    credential.id,
                    kind,
                    exc_info=exc,
                )
                results.append(ReloadResult(kind=kind, target=str(target), success=False, error=str(exc)))
                continue
            logger.info("service_reloaded credential_id=%s kind=%s target=%s", credential.id, kind, name)
            results.append(ReloadResult(kind=kind, target=name, success=True))
        return results
