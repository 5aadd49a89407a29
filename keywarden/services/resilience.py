from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time
from typing import Any, Awaitable, Callable

from keywarden.core.config import Settings, get_settings
from keywarden.core.errors import PermanentPolicyFailure, TransientExternalFailure
from keywarden.services.telemetry import increment_counter, record_backend_call


logger = logging.getLogger(__name__)


Sleeper = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    # One policy object drives every strategy's retry loop.
    max_attempts: int
    backoff_base_s: float
    timeout_s: float

    def backoff_s(self, attempt: int) -> float:
        # Delay after failed attempt N: base ** N (2s, 4s, 8s with base 2).
        return float(self.backoff_base_s ** attempt)


def default_retry_policy(settings: Settings | None = None) -> RetryPolicy:
    settings = settings or get_settings()
    return RetryPolicy(
        max_attempts=max(1, settings.rotation_max_attempts),
        backoff_base_s=settings.rotation_backoff_base_s,
        timeout_s=settings.rotation_call_timeout_s,
    )


def is_retryable(exc: BaseException) -> bool:
    # Only policy failures are permanent; backend and timeout errors are worth another try.
    if isinstance(exc, PermanentPolicyFailure):
        return False
    return isinstance(exc, Exception)


async def call_with_deadline(
    func: Callable[[], Awaitable[Any]],
    *,
    timeout_s: float,
    integration: str,
) -> Any:
    # Bound one backend call; a timeout surfaces as a transient failure.
    start = time.monotonic()
    try:
        result = await asyncio.wait_for(func(), timeout=timeout_s)
    except asyncio.TimeoutError as exc:
        increment_counter(f"external_timeouts_total.{integration}")
        record_backend_call(integration, ok=False, duration_ms=(time.monotonic() - start) * 1000.0)
        raise TransientExternalFailure(f"{integration} timed out after {timeout_s}s") from exc
    except Exception:
        record_backend_call(integration, ok=False, duration_ms=(time.monotonic() - start) * 1000.0)
        raise
    record_backend_call(integration, ok=True, duration_ms=(time.monotonic() - start) * 1000.0)
    return result


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool] | None = None,
    sleep: Sleeper = asyncio.sleep,
) -> Any:
    # Generic retry helper for side channels (webhooks); rotations use the attempt runner.
    retryable = retryable or is_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_s)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            increment_counter("external_retries_total")
            await sleep(policy.backoff_s(attempt))
            attempt += 1
