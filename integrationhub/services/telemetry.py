from __future__ import annotations

import math
import time
from collections import Counter, defaultdict, deque
from dataclasses import dataclass
from typing import Deque, Iterable


# Process-local samples; each API or worker process reports its own view.
_SAMPLE_LIMIT = 10000


@dataclass(frozen=True)
class ConnectorCall:
    ts: float
    connector_id: str
    latency_ms: float
    success: bool


@dataclass(frozen=True)
class JobRun:
    ts: float
    queue: str
    outcome: str
    duration_ms: float


_connector_calls: Deque[ConnectorCall] = deque(maxlen=_SAMPLE_LIMIT)
_job_runs: Deque[JobRun] = deque(maxlen=_SAMPLE_LIMIT)
_counters: Counter[str] = Counter()
_gauges: dict[str, float] = {}


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def record_connector_call(*, connector_id: str, latency_ms: float, success: bool) -> None:
    _connector_calls.append(
        ConnectorCall(ts=time.time(), connector_id=connector_id, latency_ms=latency_ms, success=success)
    )


def record_job(*, queue: str, outcome: str, duration_ms: float) -> None:
    _job_runs.append(JobRun(ts=time.time(), queue=queue, outcome=outcome, duration_ms=duration_ms))
    increment_counter(f"jobs_total.{queue}.{outcome}")


def _percentile(sorted_values: list[float], fraction: float) -> float:
    return sorted_values[max(0, math.ceil(fraction * len(sorted_values)) - 1)]


def _recent(samples: Iterable, window_s: int) -> list:
    cutoff = time.time() - window_s
    return [sample for sample in samples if sample.ts >= cutoff]


def connector_latency(window_s: int) -> dict[str, dict[str, float]]:
    """Summarise outbound calls per connector over the last ``window_s`` seconds."""
    grouped: dict[str, list[ConnectorCall]] = defaultdict(list)
    for call in _recent(_connector_calls, window_s):
        grouped[call.connector_id].append(call)
    summary: dict[str, dict[str, float]] = {}
    for connector_id, calls in grouped.items():
        latencies = sorted(call.latency_ms for call in calls)
        failures = sum(1 for call in calls if not call.success)
        summary[connector_id] = {
            "calls": float(len(calls)),
            "p50": _percentile(latencies, 0.5),
            "p95": _percentile(latencies, 0.95),
            "max": latencies[-1],
            "error_rate": failures / len(calls),
        }
    return summary


def job_outcomes(window_s: int) -> dict[str, dict[str, int]]:
    per_queue: dict[str, Counter[str]] = defaultdict(Counter)
    for run in _recent(_job_runs, window_s):
        per_queue[run.queue][run.outcome] += 1
    return {queue: dict(outcomes) for queue, outcomes in per_queue.items()}


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    _connector_calls.clear()
    _job_runs.clear()
    _counters.clear()
    _gauges.clear()
