from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class DecisionSample:
    ts: float
    endpoint: str
    source: str
    allowed: bool
    latency_ms: float


_decision_samples: Deque[DecisionSample] = deque(maxlen=20000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_decision(*, endpoint: str, source: str, allowed: bool, latency_ms: float) -> None:
    # Track rate limit decision latency per source for ops visibility.
    _decision_samples.append(
        DecisionSample(
            ts=time.time(),
            endpoint=endpoint,
            source=source,
            allowed=allowed,
            latency_ms=latency_ms,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = float(value)


def decision_latency_by_source(window_s: int) -> dict[str, dict[str, float]]:
    # Aggregate p50/p95/max decision latency by cache/store/fail_open source.
    cutoff = time.time() - window_s
    grouped: dict[str, list[float]] = defaultdict(list)
    for sample in _decision_samples:
        if sample.ts >= cutoff:
            grouped[sample.source].append(sample.latency_ms)
    result: dict[str, dict[str, float]] = {}
    for source, latencies in grouped.items():
        latencies.sort()
        p50_idx = max(0, math.ceil(0.5 * len(latencies)) - 1)
        p95_idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
        result[source] = {
            "p50": latencies[p50_idx],
            "p95": latencies[p95_idx],
            "max": latencies[-1],
        }
    return result


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Clear process-local metrics for deterministic tests.
    _decision_samples.clear()
    _counters.clear()
    _gauges.clear()
