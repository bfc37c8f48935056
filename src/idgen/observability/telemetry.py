# SPDX-License-Identifier: MIT
"""Aggregate per-source generation outcomes for end-of-run reporting."""

from __future__ import annotations

import sys
from collections import defaultdict
from dataclasses import dataclass, field
from typing import DefaultDict, List, TextIO


@dataclass
class SourceMetrics:
    """Outcomes collected for a single identifier source."""

    generated: int = 0
    failed: int = 0
    latencies: List[float] = field(default_factory=list)
    errors: DefaultDict[str, int] = field(default_factory=lambda: defaultdict(int))

    def add(self, *, latency: float, error_code: str | None = None) -> None:
        """Update metrics with one generation attempt."""

        if error_code is None:
            self.generated += 1
        else:
            self.failed += 1
            self.errors[error_code] += 1
        self.latencies.append(latency)

    @property
    def average_latency(self) -> float:
        """Return the average attempt latency in seconds."""

        if not self.latencies:
            return 0.0
        return sum(self.latencies) / len(self.latencies)


_metrics: DefaultDict[str, SourceMetrics] = defaultdict(SourceMetrics)


def record_generation(
    source_id: str,
    *,
    latency: float,
    error_code: str | None = None,
) -> None:
    """Record the outcome of one generation attempt against ``source_id``."""

    _metrics[source_id].add(latency=latency, error_code=error_code)


def snapshot() -> dict[str, SourceMetrics]:
    """Return the metrics recorded so far keyed by source id."""

    return dict(_metrics)


def reset() -> None:
    """Clear all recorded metrics."""

    _metrics.clear()


def summary_lines() -> list[str]:
    """Return one human readable line per source plus a totals line."""

    if not _metrics:
        return []
    lines = []
    for source_id, data in sorted(_metrics.items()):
        errors = ",".join(f"{code}={count}" for code, count in sorted(data.errors.items()))
        lines.append(
            f"{source_id}: generated={data.generated} failed={data.failed} "
            f"avg_latency={data.average_latency * 1000:.1f}ms"
            + (f" errors={errors}" if errors else "")
        )
    generated = sum(d.generated for d in _metrics.values())
    failed = sum(d.failed for d in _metrics.values())
    lines.append(f"Totals: generated={generated} failed={failed}")
    return lines


def print_summary(stream: TextIO | None = None) -> None:
    """Write a summary of collected metrics to ``stream`` (``stdout`` by default)."""

    for line in summary_lines():
        print(line, file=stream or sys.stdout)


__all__ = [
    "SourceMetrics",
    "print_summary",
    "record_generation",
    "reset",
    "snapshot",
    "summary_lines",
]
