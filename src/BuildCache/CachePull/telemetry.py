"""Prometheus metrics and the completion marker for cache pull runs."""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from prometheus_client import Counter, Histogram

if TYPE_CHECKING:
    from .pipeline import PullResult

__all__ = ["record_pull_result", "write_pull_timestamp"]

# ============================================================================
# Prometheus Metrics Registration
# ============================================================================

_pull_runs = Counter(
    "cache_pull_runs_total",
    "Total cache pull runs by terminal outcome",
    ["outcome"],
)

_pull_bytes = Counter(
    "cache_pull_bytes_read_total",
    "Archive bytes delivered to the archiver",
)

_pull_fallbacks = Counter(
    "cache_pull_fallback_total",
    "Cache pulls that had to extract from a materialised archive",
)

_pull_duration = Histogram(
    "cache_pull_duration_seconds",
    "Wall-clock duration of cache pull runs",
    buckets=(1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, float("inf")),
)


def record_pull_result(result: "PullResult") -> None:
    """Record the outcome of one pipeline run."""

    _pull_runs.labels(outcome=result.state.value).inc()
    if result.bytes_read:
        _pull_bytes.inc(result.bytes_read)
    if result.fallback_used:
        _pull_fallbacks.inc()
    _pull_duration.observe(result.duration_sec)


def record_failure(duration_sec: float) -> None:
    _pull_runs.labels(outcome="failed").inc()
    _pull_duration.observe(duration_sec)


def write_pull_timestamp(path: Path, now: Optional[float] = None) -> int:
    """Write the completion time as integer Unix seconds to ``path``.

    The file is replaced atomically so readers never observe a partial value.

    Returns:
        The timestamp written.
    """

    stamp = int(time.time() if now is None else now)
    part_path = path.with_name(path.name + ".part")
    part_path.write_text(str(stamp), encoding="utf-8")
    os.replace(part_path, path)
    return stamp
