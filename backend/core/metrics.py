"""In-process metrics for the account automation engine.

Provides:
- Step counters by action and outcome
- Goto iteration counters
- Workflow status transition counters
- Step duration observations

Rendered in Prometheus text exposition format by ``generate_metrics()``.
Each worker process keeps its own store; the database tables remain
the source for cross-process dashboards.
"""

import threading
import time
from collections import defaultdict
from typing import Optional

_lock = threading.Lock()

_counters: dict[str, float] = defaultdict(float)
_gauges: dict[str, float] = defaultdict(float)
_histograms: dict[str, list[float]] = defaultdict(list)
_start_time = time.time()


def inc(name: str, value: float = 1.0, labels: Optional[dict] = None) -> None:
    key = _label_key(name, labels)
    with _lock:
        _counters[key] += value


def gauge_set(name: str, value: float, labels: Optional[dict] = None) -> None:
    key = _label_key(name, labels)
    with _lock:
        _gauges[key] = value


def observe(name: str, value: float, labels: Optional[dict] = None) -> None:
    key = _label_key(name, labels)
    with _lock:
        _histograms[key].append(value)
        # Keep only last 10k observations to bound memory
        if len(_histograms[key]) > 10_000:
            _histograms[key] = _histograms[key][-5_000:]


def get_counter(name: str, labels: Optional[dict] = None) -> float:
    with _lock:
        return _counters.get(_label_key(name, labels), 0.0)


def reset() -> None:
    """Clear every metric (tests, worker restarts)."""
    with _lock:
        _counters.clear()
        _gauges.clear()
        _histograms.clear()


def _label_key(name: str, labels: Optional[dict] = None) -> str:
    if not labels:
        return name
    label_str = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
    return f"{name}{{{label_str}}}"


def generate_metrics() -> str:
    """Generate Prometheus exposition format text."""
    lines: list[str] = [
        "# HELP automation_uptime_seconds Time since process start.",
        "# TYPE automation_uptime_seconds gauge",
        f"automation_uptime_seconds {time.time() - _start_time:.1f}",
    ]

    with _lock:
        for key in sorted(_counters):
            lines.append(f"{key} {_counters[key]:g}")
        for key in sorted(_gauges):
            lines.append(f"{key} {_gauges[key]:g}")
        for key in sorted(_histograms):
            values = _histograms[key]
            if not values:
                continue
            if "{" in key:
                base, labels = key.split("{", 1)
                labels = "{" + labels
            else:
                base, labels = key, ""
            lines.append(f"{base}_count{labels} {len(values)}")
            lines.append(f"{base}_sum{labels} {sum(values):.3f}")

    return "\n".join(lines) + "\n"
