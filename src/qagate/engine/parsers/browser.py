"""Browser-harness parser — Playwright-style JSON reporter output.

The statistics block is accepted in either of two shapes::

    {"stats": {"expected": 3, "unexpected": 1, "flaky": 0, "skipped": 0, "duration": 1234.5}}
    {"stats": {"total": 4, "passed": 3, "failed": 1, "skipped": 0, "duration": 1234.5}}

Per-spec durations come from the nested ``suites[].specs[].tests[].results[]``
tree; the last result of each test is the one that counts.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterator

from qagate.engine.parsers._common import as_int, as_number, load_json_document, require_mapping
from qagate.engine.results import LatencyAccumulator, NormalizedResult, TaskKey, Totals
from qagate.errors import ParseFailure

_FAILED_STATUSES = {"failed", "timedOut", "interrupted", "unexpected"}


def _walk_specs(suites: list[Any]) -> Iterator[tuple[str, dict[str, Any]]]:
    stack: list[tuple[str, Any]] = [("", s) for s in reversed(suites)]
    while stack:
        prefix, node = stack.pop()
        if not isinstance(node, dict):
            continue
        title = node.get("title") or node.get("file") or ""
        path = f"{prefix} › {title}" if prefix and title else (title or prefix)
        for spec in node.get("specs") or []:
            if isinstance(spec, dict):
                spec_title = spec.get("title") or "untitled"
                yield (f"{path} › {spec_title}" if path else spec_title, spec)
        for child in reversed(node.get("suites") or []):
            stack.append((path, child))


def _spec_outcome(spec: dict[str, Any]) -> tuple[float, bool]:
    """Total duration of a spec's tests and whether any of them failed."""
    duration = 0.0
    failed = spec.get("ok") is False
    for test in spec.get("tests") or []:
        results = test.get("results") or []
        if results:
            last = results[-1]
            duration += as_number(last.get("duration")) or 0.0
            if last.get("status") in _FAILED_STATUSES:
                failed = True
        if test.get("status") == "unexpected":
            failed = True
    return duration, failed


def _totals_from_stats(stats: dict[str, Any]) -> Totals:
    if "total" in stats or "passed" in stats:
        passed = as_int(stats.get("passed"))
        failed = as_int(stats.get("failed"))
        skipped = as_int(stats.get("skipped"))
        total = as_int(stats.get("total")) or passed + failed + skipped
        return Totals(cases=total, passed=passed, failed=failed, skipped=skipped)
    passed = as_int(stats.get("expected")) + as_int(stats.get("flaky"))
    failed = as_int(stats.get("unexpected"))
    skipped = as_int(stats.get("skipped"))
    return Totals(cases=passed + failed + skipped, passed=passed, failed=failed, skipped=skipped)


def parse_browser_report(path: Path, task_key: TaskKey) -> NormalizedResult:
    doc = require_mapping(load_json_document(path), path, "Browser report")
    stats = doc.get("stats")
    suites = doc.get("suites")
    if not isinstance(stats, dict) and not isinstance(suites, list):
        raise ParseFailure(f"Browser report {path.name} has neither 'stats' nor 'suites'", str(path))

    acc = LatencyAccumulator()
    spec_total = spec_failed = 0
    for label, spec in _walk_specs(suites if isinstance(suites, list) else []):
        duration, failed = _spec_outcome(spec)
        acc.record(label, duration, error=failed)
        spec_total += 1
        spec_failed += int(failed)

    result = NormalizedResult(task_key=task_key)
    if isinstance(stats, dict):
        result.totals = _totals_from_stats(stats)
        result.duration_millis = as_number(stats.get("duration")) or 0.0
        if as_int(stats.get("flaky")):
            result.warnings.add(f"flaky-cases: {as_int(stats.get('flaky'))}")
    else:
        result.totals = Totals(cases=spec_total, passed=spec_total - spec_failed, failed=spec_failed)
        result.warnings.add("stats-derived-from-specs")
    if not result.duration_millis:
        result.duration_millis = acc.overall.total

    acc.apply_to(result)
    cases = result.totals.cases
    result.error_rate = result.totals.failed / cases if cases else 0.0
    return result
