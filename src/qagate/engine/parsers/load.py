"""Load parsers — k6-style JSONL streams and JMeter-style CSV (JTL) logs.

Both parsers stream their input and feed a shared
:class:`LatencyAccumulator`, so per-label and aggregate statistics are
computed identically and memory stays bounded by the digests.

JSONL lines describe either a single sample::

    {"metric": "http_req_duration", "value": 123.4, "tags": {"endpoint": "/api/products"}}
    {"type": "Point", "metric": "http_req_duration", "data": {"value": 123.4, "tags": {…}}}

or the end-of-run summary (``{"metrics": {…}, "state": {…}}``), whose
percentiles are preferred for the aggregate when present.
"""

from __future__ import annotations

import csv
import json
from pathlib import Path
from typing import Any

from qagate.engine.parsers._common import (
    MalformedRowCounter,
    as_int,
    as_number,
    parse_timestamp_millis,
)
from qagate.engine.results import LatencyAccumulator, NormalizedResult, TaskKey, Totals

DURATION_METRIC = "http_req_duration"
FAILED_METRIC = "http_req_failed"
UNNAMED_LABEL = "UNNAMED"

# JMeter CSV log column order, used when the file has no header row
JTL_DEFAULT_COLUMNS = [
    "timeStamp",
    "elapsed",
    "label",
    "responseCode",
    "responseMessage",
    "threadName",
    "dataType",
    "success",
    "failureMessage",
    "bytes",
    "sentBytes",
    "grpThreads",
    "allThreads",
    "URL",
    "Latency",
    "IdleTime",
    "Connect",
]


class _TimeBounds:
    def __init__(self) -> None:
        self.first: float | None = None
        self.last: float | None = None

    def see(self, ts: float | None) -> None:
        if ts is None or ts <= 0:
            return
        self.first = ts if self.first is None else min(self.first, ts)
        self.last = ts if self.last is None else max(self.last, ts)

    @property
    def span_millis(self) -> float:
        if self.first is None or self.last is None:
            return 0.0
        return self.last - self.first


def _finish_load_result(
    task_key: TaskKey,
    acc: LatencyAccumulator,
    bounds: _TimeBounds,
    warnings: set[str],
) -> NormalizedResult:
    result = NormalizedResult(task_key=task_key, sample_based=True, warnings=warnings)
    acc.apply_to(result)
    samples = acc.overall.count
    errors = acc.overall_errors
    result.totals = Totals(cases=samples, passed=samples - errors, failed=errors)
    result.error_rate = errors / samples if samples else 0.0
    result.duration_millis = bounds.span_millis
    if bounds.span_millis > 0:
        result.throughput_per_second = samples / (bounds.span_millis / 1000.0)
    return result


def _empty_load_result(task_key: TaskKey, warnings: set[str]) -> NormalizedResult:
    """No latency samples at all: the run produced nothing to judge."""
    result = NormalizedResult.empty(task_key)
    result.warnings |= warnings
    return result


# ── JSONL stream ─────────────────────────────────────────────────────────


def _sample_fields(obj: dict[str, Any]) -> tuple[str | None, float | None, dict[str, Any], Any]:
    data = obj.get("data") if isinstance(obj.get("data"), dict) else obj
    tags = data.get("tags") if isinstance(data.get("tags"), dict) else {}
    return obj.get("metric"), as_number(data.get("value")), tags, data.get("time")


def _label_from_tags(tags: dict[str, Any]) -> str:
    return str(tags.get("endpoint") or tags.get("name") or UNNAMED_LABEL)


def _apply_summary(result: NormalizedResult, summary: dict[str, Any]) -> None:
    metrics = summary.get("metrics") or {}
    duration = (metrics.get(DURATION_METRIC) or {}).get("values") or metrics.get(DURATION_METRIC) or {}
    failed = (metrics.get(FAILED_METRIC) or {}).get("values") or metrics.get(FAILED_METRIC) or {}
    reqs = (metrics.get("http_reqs") or {}).get("values") or metrics.get("http_reqs") or {}

    agg = result.aggregate_latency_millis
    for attr, key in (("avg", "avg"), ("min", "min"), ("max", "max"), ("p50", "med"), ("p95", "p(95)"), ("p99", "p(99)")):
        value = as_number(duration.get(key))
        if value is not None:
            setattr(agg, attr, round(value, 3))
    count = as_int(reqs.get("count"))
    if count and not agg.samples:
        agg.samples = count
        rate = as_number(failed.get("rate")) or 0.0
        errors = round(rate * count)
        agg.errors = errors
        result.totals = Totals(cases=count, passed=count - errors, failed=errors)
        result.warnings.add("summary-only")
    rate = as_number(failed.get("rate"))
    if rate is not None:
        result.error_rate = rate
    throughput = as_number(reqs.get("rate"))
    if throughput is not None:
        result.throughput_per_second = throughput
    run_ms = as_number((summary.get("state") or {}).get("testRunDurationMs"))
    if run_ms is not None:
        result.duration_millis = run_ms

    # Mixing summary and digest percentiles must keep p50 <= p95 <= p99 <= max
    floor = None
    for attr in ("p50", "p95", "p99", "max"):
        value = getattr(agg, attr)
        if value is None:
            continue
        if floor is not None and value < floor:
            setattr(agg, attr, floor)
        else:
            floor = value


def parse_load_stream(path: Path, task_key: TaskKey) -> NormalizedResult:
    acc = LatencyAccumulator()
    bounds = _TimeBounds()
    counter = MalformedRowCounter(path)
    warnings: set[str] = set()
    summary: dict[str, Any] | None = None
    failed_by_label: dict[str, int] = {}

    with open(path, encoding="utf-8-sig", errors="replace") as fh:
        for line in fh:
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                counter.bad()
                continue
            if not isinstance(obj, dict):
                counter.bad()
                continue
            if isinstance(obj.get("metrics"), dict) or obj.get("type") == "summary":
                summary = obj
                counter.ok()
                continue
            if obj.get("type") == "Metric":
                counter.ok()
                continue
            metric, value, tags, ts = _sample_fields(obj)
            if metric is None or value is None:
                counter.bad()
                continue
            counter.ok()
            if metric == DURATION_METRIC:
                acc.record(_label_from_tags(tags), value)
                bounds.see(parse_timestamp_millis(ts))
            elif metric == FAILED_METRIC and value >= 1:
                label = _label_from_tags(tags)
                failed_by_label[label] = failed_by_label.get(label, 0) + 1

    counter.check(warnings)
    for label, errors in failed_by_label.items():
        if label in acc.labels:
            acc.label_errors[label] += errors
            acc.overall_errors += errors
        else:
            warnings.add(f"errors-without-samples: {label}")

    if summary is None and acc.overall.count == 0:
        return _empty_load_result(task_key, warnings)
    result = _finish_load_result(task_key, acc, bounds, warnings)
    if summary is not None:
        _apply_summary(result, summary)
    return result


# ── CSV (JTL) ────────────────────────────────────────────────────────────


def _has_header(first_line: str) -> bool:
    return "timestamp" in first_line.lower() or "elapsed" in first_line.lower()


def _parse_success(value: Any) -> bool | None:
    text = str(value).strip().lower() if value is not None else ""
    if text == "true":
        return True
    if text == "false":
        return False
    return None


def parse_load_csv(path: Path, task_key: TaskKey) -> NormalizedResult:
    acc = LatencyAccumulator()
    bounds = _TimeBounds()
    counter = MalformedRowCounter(path)
    warnings: set[str] = set()

    with open(path, encoding="utf-8-sig", errors="replace", newline="") as fh:
        first_line = fh.readline()
        fh.seek(0)
        header = _has_header(first_line)
        reader = csv.DictReader(
            fh,
            fieldnames=None if header else JTL_DEFAULT_COLUMNS,
            skipinitialspace=True,
            strict=False,
        )
        for row in reader:
            if not any((v or "").strip() for v in row.values() if isinstance(v, str)):
                continue
            elapsed = as_number(row.get("elapsed"))
            success = _parse_success(row.get("success"))
            label = (row.get("label") or "").strip()
            if elapsed is None or success is None or not label:
                counter.bad()
                continue
            counter.ok()
            acc.record(label, elapsed, error=not success)
            bounds.see(as_number(row.get("timeStamp")))

    counter.check(warnings)
    if not header:
        warnings.add("jtl-without-header")
    if acc.overall.count == 0:
        return _empty_load_result(task_key, warnings)
    return _finish_load_result(task_key, acc, bounds, warnings)
