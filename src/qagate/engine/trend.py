"""Trend Analyzer — compares a run against the runs archived before it.

Tracked metrics and how a change is judged:

========== ================ =========================
metric     better when      noise floor
========== ================ =========================
passRate   higher           absolute (0.01)
duration   lower            relative to previous (5%)
p95        lower            relative to previous (5%)
errorRate  lower            absolute (0.005)
========== ================ =========================

A change no larger than the floor is ``stable``.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING, Any, Callable

from qagate.models import DEFAULT_NOISE_FLOORS, DEFAULT_TREND_WINDOW

if TYPE_CHECKING:
    from qagate.engine.aggregator import RunSummary

logger = logging.getLogger("qagate.engine.trend")

IMPROVING = "improving"
STABLE = "stable"
DEGRADING = "degrading"


@dataclasses.dataclass(frozen=True)
class MetricSpec:
    name: str
    higher_is_better: bool
    relative: bool
    value: Callable[[RunSummary], float | None]


def _p95(summary: RunSummary) -> float | None:
    return summary.aggregate_latency_millis.p95


METRICS: tuple[MetricSpec, ...] = (
    MetricSpec("passRate", True, False, lambda s: s.pass_rate),
    MetricSpec("duration", False, True, lambda s: s.duration_millis),
    MetricSpec("p95", False, True, _p95),
    MetricSpec("errorRate", False, False, lambda s: s.error_rate),
)


def _round(value: float | None) -> float | None:
    return round(value, 6) if value is not None else None


@dataclasses.dataclass
class MetricTrend:
    """Change of one metric between the current and the previous run."""

    metric: str
    current: float | None
    previous: float | None
    absolute_change: float | None
    relative_change: float | None
    trend: str
    noise_floor: float
    window_mean: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.metric,
            "current": _round(self.current),
            "previous": _round(self.previous),
            "absoluteChange": _round(self.absolute_change),
            "relativeChange": _round(self.relative_change),
            "trend": self.trend,
            "noiseFloor": self.noise_floor,
            "windowMean": _round(self.window_mean),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MetricTrend:
        return cls(
            metric=data["metric"],
            current=data.get("current"),
            previous=data.get("previous"),
            absolute_change=data.get("absoluteChange"),
            relative_change=data.get("relativeChange"),
            trend=data.get("trend", STABLE),
            noise_floor=float(data.get("noiseFloor", 0.0)),
            window_mean=data.get("windowMean"),
        )


@dataclasses.dataclass
class TrendSnapshot:
    """Per-metric trends of one run. Derived data, never stored on its own."""

    run_id: str
    previous_run_id: str | None
    window: int
    metrics: dict[str, MetricTrend]

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "previousRunId": self.previous_run_id,
            "window": self.window,
            "metrics": {name: m.to_dict() for name, m in self.metrics.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrendSnapshot:
        return cls(
            run_id=data["runId"],
            previous_run_id=data.get("previousRunId"),
            window=int(data.get("window", 0)),
            metrics={name: MetricTrend.from_dict(m) for name, m in (data.get("metrics") or {}).items()},
        )


class TrendAnalyzer:
    """Computes TrendSnapshots from a run and its archived predecessors."""

    def __init__(self, noise_floors: dict[str, float] | None = None, window: int = DEFAULT_TREND_WINDOW) -> None:
        self.noise_floors = dict(DEFAULT_NOISE_FLOORS)
        if noise_floors:
            self.noise_floors.update(noise_floors)
        self.window = window

    def analyze(self, current: RunSummary, history: list[RunSummary]) -> TrendSnapshot:
        """Compare ``current`` with the runs that started before it.

        ``history`` may contain the current run itself and runs in any
        order; only earlier runs are used, newest first, up to ``window``.
        """
        prior = sorted(
            (h for h in history if h.run_id != current.run_id and h.started_at < current.started_at),
            key=lambda h: h.started_at,
            reverse=True,
        )[: self.window]
        previous = prior[0] if prior else None
        logger.debug("Trend for %s over %d prior run(s)", current.run_id, len(prior))

        metrics = {spec.name: self._metric(spec, current, previous, prior) for spec in METRICS}
        return TrendSnapshot(
            run_id=current.run_id,
            previous_run_id=previous.run_id if previous else None,
            window=len(prior),
            metrics=metrics,
        )

    def _metric(
        self,
        spec: MetricSpec,
        current: RunSummary,
        previous: RunSummary | None,
        prior: list[RunSummary],
    ) -> MetricTrend:
        floor = float(self.noise_floors.get(spec.name, 0.0))
        cur = spec.value(current)
        prev = spec.value(previous) if previous is not None else None
        window_values = [v for v in (spec.value(s) for s in prior) if v is not None]
        window_mean = sum(window_values) / len(window_values) if window_values else None

        if cur is None or prev is None:
            return MetricTrend(spec.name, cur, prev, None, None, STABLE, floor, window_mean)

        change = cur - prev
        if prev != 0:
            relative = change / abs(prev)
        else:
            relative = 0.0 if change == 0 else float("inf")
        magnitude = abs(relative) if spec.relative else abs(change)

        if magnitude <= floor:
            trend = STABLE
        elif (change > 0) == spec.higher_is_better:
            trend = IMPROVING
        else:
            trend = DEGRADING

        return MetricTrend(
            metric=spec.name,
            current=cur,
            previous=prev,
            absolute_change=change,
            relative_change=relative if relative != float("inf") else None,
            trend=trend,
            noise_floor=floor,
            window_mean=window_mean,
        )
