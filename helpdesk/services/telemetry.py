from __future__ import annotations

import math
import time
from collections import Counter, deque
from dataclasses import dataclass
from typing import Deque, Iterable


# Integration names used when recording outbound calls.
TOOL_INTEGRATION = "tenant_tool"
METADATA_INTEGRATION = "metadata_api"


@dataclass(frozen=True)
class CallSample:
    recorded_at: float
    integration: str
    latency_ms: float
    ok: bool


_chat_streams: Deque[float] = deque(maxlen=5000)
_calls: Deque[CallSample] = deque(maxlen=10000)
_counters: Counter[str] = Counter()


def _p95(values: Iterable[float]) -> tuple[float | None, float | None]:
    ordered = sorted(values)
    if not ordered:
        return None, None
    return ordered[max(0, math.ceil(0.95 * len(ordered)) - 1)], ordered[-1]


def record_stream_duration(duration_ms: float) -> None:
    _chat_streams.append(duration_ms)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    _calls.append(CallSample(recorded_at=time.time(), integration=integration, latency_ms=latency_ms, ok=success))
    if not success:
        _counters[f"{integration}_failures_total"] += 1


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def external_call_stats(window_s: int) -> dict[str, dict[str, float | int | None]]:
    """Per-integration latency and failure summary for calls in the last ``window_s`` seconds."""
    cutoff = time.time() - window_s
    grouped: dict[str, list[CallSample]] = {}
    for sample in _calls:
        if sample.recorded_at >= cutoff:
            grouped.setdefault(sample.integration, []).append(sample)
    stats: dict[str, dict[str, float | int | None]] = {}
    for integration, samples in grouped.items():
        p95, slowest = _p95(sample.latency_ms for sample in samples)
        stats[integration] = {
            "calls": len(samples),
            "p95": p95,
            "max": slowest,
            "failures": sum(not sample.ok for sample in samples),
        }
    return stats


def stream_duration_stats() -> dict[str, float | None]:
    p95, slowest = _p95(_chat_streams)
    return {"p95": p95, "max": slowest}


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_telemetry() -> None:
    _chat_streams.clear()
    _calls.clear()
    _counters.clear()
