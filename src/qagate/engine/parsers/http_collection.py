"""HTTP-collection parser — Newman-style run summary.

Accepts the JSON reporter document (``{"collection": …, "run": {…}}``) or the
bare ``run`` object. ``stats.assertions`` drives the case totals and the
error rate, and every failed request adds one errored case. Each execution
contributes its response time under the request name.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from qagate.engine.parsers._common import (
    as_int,
    as_number,
    load_json_document,
    parse_timestamp_millis,
    require_mapping,
)
from qagate.engine.results import LatencyAccumulator, NormalizedResult, TaskKey, Totals
from qagate.errors import ParseFailure


def _execution_failed(execution: dict[str, Any]) -> bool:
    if execution.get("requestError"):
        return True
    return any(isinstance(a, dict) and a.get("error") for a in execution.get("assertions") or [])


def parse_http_collection(path: Path, task_key: TaskKey) -> NormalizedResult:
    doc = require_mapping(load_json_document(path), path, "Collection run summary")
    run = doc.get("run", doc)
    if not isinstance(run, dict) or not isinstance(run.get("stats"), dict):
        raise ParseFailure(f"Collection run summary {path.name} has no 'stats' block", str(path))

    stats = run["stats"]
    assertions = stats.get("assertions") or {}
    requests = stats.get("requests") or {}
    total_assertions = as_int(assertions.get("total"))
    failed_assertions = min(as_int(assertions.get("failed")), total_assertions)
    failed_requests = as_int(requests.get("failed"))

    result = NormalizedResult(task_key=task_key)
    # A request that never got a response counts as one errored case of its own
    result.totals = Totals(
        cases=total_assertions + failed_requests,
        passed=total_assertions - failed_assertions,
        failed=failed_assertions,
        errored=failed_requests,
    )
    result.error_rate = failed_assertions / total_assertions if total_assertions else 0.0

    acc = LatencyAccumulator()
    for execution in run.get("executions") or []:
        if not isinstance(execution, dict):
            continue
        response = execution.get("response") or {}
        elapsed = as_number(response.get("responseTime"))
        if elapsed is None:
            continue
        item = execution.get("item") or {}
        label = item.get("name") or "UNNAMED"
        acc.record(label, elapsed, error=_execution_failed(execution))
    acc.apply_to(result)

    timings = run.get("timings") or {}
    started = parse_timestamp_millis(timings.get("started"))
    completed = parse_timestamp_millis(timings.get("completed"))
    if started is not None and completed is not None and completed >= started:
        result.duration_millis = completed - started
    else:
        result.duration_millis = acc.overall.total
    if result.duration_millis > 0 and as_int(requests.get("total")):
        result.throughput_per_second = as_int(requests.get("total")) / (result.duration_millis / 1000.0)
    return result
