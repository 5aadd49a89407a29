from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass
import time


# Process-local only; the worker log carries the same events for long-term analysis.
_BACKEND_WINDOW = 5000


@dataclass(frozen=True)
class BackendCall:
    backend: str
    ok: bool
    duration_ms: float
    at: float


_backend_calls: deque[BackendCall] = deque(maxlen=_BACKEND_WINDOW)
_counters: Counter[str] = Counter()


def record_backend_call(backend: str, *, ok: bool, duration_ms: float) -> None:
    _backend_calls.append(BackendCall(backend=backend, ok=ok, duration_ms=duration_ms, at=time.time()))


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def counter_value(name: str) -> int:
    return _counters[name]


def backend_failure_rate(backend: str, window_s: int = 300) -> float | None:
    # None when the backend saw no calls in the window.
    since = time.time() - window_s
    outcomes = [call.ok for call in _backend_calls if call.backend == backend and call.at >= since]
    if not outcomes:
        return None
    return outcomes.count(False) / len(outcomes)


def reset_telemetry() -> None:
    _backend_calls.clear()
    _counters.clear()
