"""SLO Evaluator — judges a NormalizedResult against an SLOPolicy.

Predicates (each skipped when its threshold is unset):

- ``p95``: ``aggregate.p95 < p95_lt_millis``
- ``p99``: ``aggregate.p99 < p99_lt_millis``
- ``errorRate``: ``error_rate < error_rate_lt_ratio``
- ``volume``: ``totals.cases >= min_cases``
- ``cases``: no failed or errored cases, for results that are not
  sample-based (load results express failures through ``errorRate``)

Undefined percentiles (no samples) fail only when ``min_cases > 0``.
Per-label overrides replace the thresholds used against a matching label's
statistics and add ``label:<label>:<metric>`` reasons.
"""

from __future__ import annotations

import dataclasses
import fnmatch
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from qagate.engine.results import LatencyStats, NormalizedResult


def _pick(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _as_float(value: Any) -> float | None:
    return None if value is None else float(value)


@dataclasses.dataclass(frozen=True)
class LabelOverride:
    """Thresholds applied to every label matching ``pattern`` (fnmatch glob)."""

    pattern: str
    p95_lt_millis: float | None = None
    p99_lt_millis: float | None = None
    error_rate_lt_ratio: float | None = None

    def matches(self, label: str) -> bool:
        return fnmatch.fnmatchcase(label, self.pattern)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pattern": self.pattern,
            "p95LtMillis": self.p95_lt_millis,
            "p99LtMillis": self.p99_lt_millis,
            "errorRateLtRatio": self.error_rate_lt_ratio,
        }

    @classmethod
    def from_dict(cls, pattern: str, data: dict[str, Any]) -> LabelOverride:
        return cls(
            pattern=pattern,
            p95_lt_millis=_as_float(_pick(data, "p95LtMillis", "p95_lt_millis", "p95")),
            p99_lt_millis=_as_float(_pick(data, "p99LtMillis", "p99_lt_millis", "p99")),
            error_rate_lt_ratio=_as_float(_pick(data, "errorRateLtRatio", "error_rate_lt_ratio", "error_rate")),
        )


@dataclasses.dataclass(frozen=True)
class SLOPolicy:
    """Latency-percentile and error-rate budget for a task."""

    p95_lt_millis: float | None = None
    p99_lt_millis: float | None = None
    error_rate_lt_ratio: float | None = None
    min_cases: int | None = None
    label_overrides: tuple[LabelOverride, ...] = ()

    @property
    def effective_min_cases(self) -> int:
        return self.min_cases or 0

    def overlay(self, other: SLOPolicy | None) -> SLOPolicy:
        """Return a policy where every threshold ``other`` sets wins."""
        if other is None:
            return self
        return SLOPolicy(
            p95_lt_millis=other.p95_lt_millis if other.p95_lt_millis is not None else self.p95_lt_millis,
            p99_lt_millis=other.p99_lt_millis if other.p99_lt_millis is not None else self.p99_lt_millis,
            error_rate_lt_ratio=(
                other.error_rate_lt_ratio if other.error_rate_lt_ratio is not None else self.error_rate_lt_ratio
            ),
            min_cases=other.min_cases if other.min_cases is not None else self.min_cases,
            label_overrides=other.label_overrides or self.label_overrides,
        )

    def override_for(self, label: str) -> LabelOverride | None:
        for override in self.label_overrides:
            if override.matches(label):
                return override
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "p95LtMillis": self.p95_lt_millis,
            "p99LtMillis": self.p99_lt_millis,
            "errorRateLtRatio": self.error_rate_lt_ratio,
            "minCases": self.min_cases,
            "labelOverrides": [o.to_dict() for o in self.label_overrides],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SLOPolicy:
        """Build a policy from YAML (snake_case or short keys) or JSON (camelCase)."""
        raw_overrides = _pick(data, "labelOverrides", "label_overrides", "labels") or {}
        if isinstance(raw_overrides, dict):
            overrides = tuple(LabelOverride.from_dict(str(k), v or {}) for k, v in raw_overrides.items())
        else:
            overrides = tuple(LabelOverride.from_dict(str(o["pattern"]), o) for o in raw_overrides)
        min_cases = _pick(data, "minCases", "min_cases")
        return cls(
            p95_lt_millis=_as_float(_pick(data, "p95LtMillis", "p95_lt_millis", "p95")),
            p99_lt_millis=_as_float(_pick(data, "p99LtMillis", "p99_lt_millis", "p99")),
            error_rate_lt_ratio=_as_float(_pick(data, "errorRateLtRatio", "error_rate_lt_ratio", "error_rate")),
            min_cases=int(min_cases) if min_cases is not None else None,
            label_overrides=overrides,
        )


@dataclasses.dataclass(frozen=True)
class SLOReason:
    """One failed predicate: which metric, the observed value and the budget."""

    metric: str
    value: float | None
    budget: float | None
    label: str | None = None

    @property
    def code(self) -> str:
        return f"label:{self.label}:{self.metric}" if self.label else self.metric

    def describe(self) -> str:
        value = "n/a" if self.value is None else f"{self.value:g}"
        if self.metric == "volume":
            return f"{self.code}: {value} cases, need at least {self.budget:g}"
        if self.metric == "cases":
            return f"{self.code}: {value} failed or errored case(s)"
        if self.metric == "exit-code":
            return f"{self.code}: child exited with {value}"
        budget = "n/a" if self.budget is None else f"{self.budget:g}"
        return f"{self.code}: {value} not below budget {budget}"

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "metric": self.metric, "value": self.value, "budget": self.budget, "label": self.label}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SLOReason:
        return cls(metric=data["metric"], value=data.get("value"), budget=data.get("budget"), label=data.get("label"))


@dataclasses.dataclass
class SLOEvaluation:
    """Outcome of evaluating one result."""

    passed: bool
    reasons: list[SLOReason]

    @property
    def state(self) -> str:
        return "passed" if self.passed else "failed"

    @property
    def codes(self) -> list[str]:
        return [r.code for r in self.reasons]

    @property
    def deterministic(self) -> bool:
        """True when a retry cannot plausibly change the outcome.

        A result with no cases and no samples only fails on volume; rerunning
        the same broken suite yields the same empty output.
        """
        return bool(self.reasons) and all(r.metric in ("volume",) for r in self.reasons)


class SLOEvaluator:
    """Evaluates NormalizedResults against SLOPolicies."""

    def evaluate(
        self,
        result: NormalizedResult,
        policy: SLOPolicy,
        exit_code: int | None = None,
    ) -> SLOEvaluation:
        reasons: list[SLOReason] = []
        min_cases = policy.effective_min_cases
        agg = result.aggregate_latency_millis

        self._check_percentile(reasons, "p95", agg.p95, policy.p95_lt_millis, min_cases)
        self._check_percentile(reasons, "p99", agg.p99, policy.p99_lt_millis, min_cases)

        if policy.error_rate_lt_ratio is not None and not result.error_rate < policy.error_rate_lt_ratio:
            reasons.append(SLOReason("errorRate", result.error_rate, policy.error_rate_lt_ratio))

        if result.totals.cases < min_cases:
            reasons.append(SLOReason("volume", float(result.totals.cases), float(min_cases)))

        if not result.sample_based:
            bad = result.totals.failed + result.totals.errored
            if bad > 0:
                reasons.append(SLOReason("cases", float(bad), 0.0))

        for label in sorted(result.latency_millis_by_label):
            override = policy.override_for(label)
            if override is not None:
                reasons.extend(self._check_label(label, result.latency_millis_by_label[label], override, min_cases))

        if not reasons and exit_code not in (None, 0):
            reasons.append(SLOReason("exit-code", float(exit_code), 0.0))

        return SLOEvaluation(passed=not reasons, reasons=reasons)

    @staticmethod
    def _check_percentile(
        reasons: list[SLOReason],
        metric: str,
        value: float | None,
        budget: float | None,
        min_cases: int,
        label: str | None = None,
    ) -> None:
        if budget is None:
            return
        if value is None:
            if min_cases > 0:
                reasons.append(SLOReason(metric, None, budget, label))
            return
        if not value < budget:
            reasons.append(SLOReason(metric, value, budget, label))

    def _check_label(
        self,
        label: str,
        stats: LatencyStats,
        override: LabelOverride,
        min_cases: int,
    ) -> list[SLOReason]:
        reasons: list[SLOReason] = []
        self._check_percentile(reasons, "p95", stats.p95, override.p95_lt_millis, min_cases, label)
        self._check_percentile(reasons, "p99", stats.p99, override.p99_lt_millis, min_cases, label)
        if override.error_rate_lt_ratio is not None and stats.samples:
            rate = stats.errors / stats.samples
            if not rate < override.error_rate_lt_ratio:
                reasons.append(SLOReason("errorRate", rate, override.error_rate_lt_ratio, label))
        return reasons
