"""Normalized result model — the canonical, tool-agnostic result shape.

Every parser produces a :class:`NormalizedResult`; nothing downstream of the
parser registry ever sees a tool's native format. Latency statistics are
derived from :class:`LatencyDigest` instances which travel with the result so
that run-level percentiles can be recomputed from the union of digests
instead of averaging percentiles.
"""

from __future__ import annotations

import dataclasses
from typing import Any, Iterable

from qagate.engine.digest import LatencyDigest


@dataclasses.dataclass(frozen=True, order=True)
class TaskKey:
    """Identity of one scheduler fan-out of a suite."""

    run_id: str
    suite_id: str
    environment: str
    browser: str | None = None

    @property
    def target(self) -> str:
        """``<env>[/<browser>]`` — the JUnit test case name."""
        return f"{self.environment}/{self.browser}" if self.browser else self.environment

    @property
    def slug(self) -> str:
        return f"{self.suite_id}:{self.target}"

    def sort_key(self) -> tuple[str, str, str]:
        return (self.suite_id, self.environment, self.browser or "")

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "suiteId": self.suite_id,
            "environment": self.environment,
            "browser": self.browser,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskKey:
        return cls(
            run_id=data["runId"],
            suite_id=data["suiteId"],
            environment=data["environment"],
            browser=data.get("browser"),
        )


@dataclasses.dataclass
class Totals:
    """Case counts for one result or one breakdown."""

    cases: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    errored: int = 0

    def __add__(self, other: Totals) -> Totals:
        return Totals(
            cases=self.cases + other.cases,
            passed=self.passed + other.passed,
            failed=self.failed + other.failed,
            skipped=self.skipped + other.skipped,
            errored=self.errored + other.errored,
        )

    def to_dict(self) -> dict[str, int]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Totals:
        return cls(**{f.name: int(data.get(f.name, 0)) for f in dataclasses.fields(cls)})


@dataclasses.dataclass
class LatencyStats:
    """Summary statistics of one latency distribution, in milliseconds."""

    avg: float | None = None
    min: float | None = None
    max: float | None = None
    p50: float | None = None
    p95: float | None = None
    p99: float | None = None
    samples: int = 0
    errors: int = 0

    @classmethod
    def from_digest(cls, digest: LatencyDigest, errors: int = 0) -> LatencyStats:
        top = _rounded(digest.max)
        # Rounded percentiles never exceed the rounded maximum
        p50, p95, p99 = (_capped(_rounded(digest.percentile(p)), top) for p in (50, 95, 99))
        return cls(
            avg=_rounded(digest.mean),
            min=_rounded(digest.min),
            max=top,
            p50=p50,
            p95=p95,
            p99=p99,
            samples=digest.count,
            errors=errors,
        )

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LatencyStats:
        return cls(**{f.name: data.get(f.name, f.default) for f in dataclasses.fields(cls)})


def _rounded(value: float | None) -> float | None:
    return round(value, 3) if value is not None else None


def _capped(value: float | None, ceiling: float | None) -> float | None:
    if value is None or ceiling is None:
        return value
    return min(value, ceiling)


@dataclasses.dataclass
class NormalizedResult:
    """Canonical result of one task attempt."""

    task_key: TaskKey
    totals: Totals = dataclasses.field(default_factory=Totals)
    duration_millis: float = 0.0
    latency_millis_by_label: dict[str, LatencyStats] = dataclasses.field(default_factory=dict)
    aggregate_latency_millis: LatencyStats = dataclasses.field(default_factory=LatencyStats)
    error_rate: float = 0.0
    throughput_per_second: float | None = None
    warnings: set[str] = dataclasses.field(default_factory=set)
    sample_based: bool = False
    label_digests: dict[str, LatencyDigest] = dataclasses.field(default_factory=dict)
    aggregate_digest: LatencyDigest = dataclasses.field(default_factory=LatencyDigest)

    @classmethod
    def empty(cls, task_key: TaskKey, warning: str = "empty-output") -> NormalizedResult:
        """Result for an artifact with no content: ``{cases: 0, errored: 1}``."""
        return cls(task_key=task_key, totals=Totals(errored=1), warnings={warning})

    @property
    def is_empty_output(self) -> bool:
        return "empty-output" in self.warnings

    def to_dict(self, include_digests: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "taskKey": self.task_key.to_dict(),
            "totals": self.totals.to_dict(),
            "durationMillis": round(self.duration_millis, 3),
            "latencyMillisByLabel": {
                label: stats.to_dict() for label, stats in sorted(self.latency_millis_by_label.items())
            },
            "aggregateLatencyMillis": self.aggregate_latency_millis.to_dict(),
            "errorRate": round(self.error_rate, 6),
            "throughputPerSecond": (
                round(self.throughput_per_second, 3) if self.throughput_per_second is not None else None
            ),
            "warnings": sorted(self.warnings),
            "sampleBased": self.sample_based,
        }
        if include_digests:
            data["digests"] = {
                "aggregate": self.aggregate_digest.to_dict(),
                "labels": {label: d.to_dict() for label, d in sorted(self.label_digests.items())},
            }
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NormalizedResult:
        digests = data.get("digests") or {}
        return cls(
            task_key=TaskKey.from_dict(data["taskKey"]),
            totals=Totals.from_dict(data.get("totals", {})),
            duration_millis=float(data.get("durationMillis", 0.0)),
            latency_millis_by_label={
                label: LatencyStats.from_dict(stats)
                for label, stats in (data.get("latencyMillisByLabel") or {}).items()
            },
            aggregate_latency_millis=LatencyStats.from_dict(data.get("aggregateLatencyMillis") or {}),
            error_rate=float(data.get("errorRate", 0.0)),
            throughput_per_second=data.get("throughputPerSecond"),
            warnings=set(data.get("warnings", [])),
            sample_based=bool(data.get("sampleBased", False)),
            label_digests={
                label: LatencyDigest.from_dict(d) for label, d in (digests.get("labels") or {}).items()
            },
            aggregate_digest=(
                LatencyDigest.from_dict(digests["aggregate"]) if "aggregate" in digests else LatencyDigest()
            ),
        )


class LatencyAccumulator:
    """Collects per-label latency samples and errors for a parser.

    Duplicate labels merge naturally: every sample for a label lands in the
    same digest and error counter.
    """

    def __init__(self) -> None:
        self.labels: dict[str, LatencyDigest] = {}
        self.label_errors: dict[str, int] = {}
        self.overall = LatencyDigest()
        self.overall_errors = 0

    def record(self, label: str, value: float, error: bool = False) -> None:
        digest = self.labels.get(label)
        if digest is None:
            digest = self.labels[label] = LatencyDigest()
            self.label_errors[label] = 0
        digest.add(value)
        self.overall.add(value)
        if error:
            self.label_errors[label] += 1
            self.overall_errors += 1

    def label_stats(self) -> dict[str, LatencyStats]:
        return {
            label: LatencyStats.from_digest(digest, self.label_errors.get(label, 0))
            for label, digest in self.labels.items()
        }

    def apply_to(self, result: NormalizedResult) -> NormalizedResult:
        result.label_digests = self.labels
        result.aggregate_digest = self.overall
        result.latency_millis_by_label = self.label_stats()
        result.aggregate_latency_millis = LatencyStats.from_digest(self.overall, self.overall_errors)
        return result


def merge_results(task_key: TaskKey, results: Iterable[NormalizedResult]) -> NormalizedResult:
    """Merge several results into one record keyed by ``task_key``.

    Counts add, label statistics are recomputed from the union of digests,
    ``error_rate`` is the case-weighted mean and throughput adds up.
    """
    merged = NormalizedResult(task_key=task_key)
    label_digests: dict[str, LatencyDigest] = {}
    label_errors: dict[str, int] = {}
    aggregate_errors = 0
    weighted_errors = 0.0
    weight = 0
    throughput: float | None = None
    sample_based = True
    seen = False

    for result in results:
        seen = True
        merged.totals = merged.totals + result.totals
        merged.duration_millis += result.duration_millis
        merged.warnings |= result.warnings
        sample_based = sample_based and result.sample_based
        for label, digest in result.label_digests.items():
            if label not in label_digests:
                label_digests[label] = LatencyDigest(digest.relative_accuracy, digest.exact_limit)
                label_errors[label] = 0
            label_digests[label].merge(digest)
        for label, stats in result.latency_millis_by_label.items():
            label_errors[label] = label_errors.get(label, 0) + stats.errors
        merged.aggregate_digest.merge(result.aggregate_digest)
        aggregate_errors += result.aggregate_latency_millis.errors
        weighted_errors += result.error_rate * result.totals.cases
        weight += result.totals.cases
        if result.throughput_per_second is not None:
            throughput = (throughput or 0.0) + result.throughput_per_second

    merged.sample_based = sample_based and seen
    merged.label_digests = label_digests
    merged.latency_millis_by_label = {
        label: LatencyStats.from_digest(digest, label_errors.get(label, 0))
        for label, digest in label_digests.items()
    }
    merged.aggregate_latency_millis = LatencyStats.from_digest(merged.aggregate_digest, aggregate_errors)
    merged.error_rate = weighted_errors / weight if weight else 0.0
    merged.throughput_per_second = throughput
    return merged
