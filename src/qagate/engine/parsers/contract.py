"""Contract parser — Pact verification output.

Expects interaction-level results, either at the top level or per verified
pact::

    {"interactions": [{"description": "a request for products", "success": true, "durationMillis": 12}]}
    [{"consumer": "web", "provider": "product-service", "interactions": [...]}]

An interaction passes when ``success`` is true or ``status`` is ``passed``.
Failing interactions marked ``pending`` are reported as skipped.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterator

from qagate.engine.parsers._common import as_number, load_json_document
from qagate.engine.results import LatencyAccumulator, NormalizedResult, TaskKey, Totals
from qagate.errors import ParseFailure


def _interactions(doc: Any, path: Path) -> Iterator[tuple[str, dict[str, Any]]]:
    documents = doc if isinstance(doc, list) else [doc]
    found = False
    for document in documents:
        if not isinstance(document, dict):
            continue
        items = document.get("interactions", document.get("results"))
        if not isinstance(items, list):
            continue
        found = True
        prefix = document.get("consumer")
        for item in items:
            if isinstance(item, dict):
                description = str(item.get("description") or "unnamed interaction")
                yield (f"{prefix}: {description}" if prefix else description), item
    if not found:
        raise ParseFailure(f"Contract verification {path.name} has no interaction results", str(path))


def _interaction_passed(item: dict[str, Any]) -> bool:
    if "success" in item:
        return bool(item["success"])
    return str(item.get("status", "")).lower() in ("passed", "success", "ok")


def parse_contract_verification(path: Path, task_key: TaskKey) -> NormalizedResult:
    doc = load_json_document(path)
    acc = LatencyAccumulator()
    passed = failed = pending = 0

    for label, item in _interactions(doc, path):
        ok = _interaction_passed(item)
        if ok:
            passed += 1
        elif item.get("pending"):
            pending += 1
        else:
            failed += 1
        duration = as_number(item.get("durationMillis", item.get("duration")))
        if duration is not None:
            acc.record(label, duration, error=not ok)

    result = NormalizedResult(task_key=task_key)
    cases = passed + failed + pending
    result.totals = Totals(cases=cases, passed=passed, failed=failed, skipped=pending)
    result.error_rate = failed / cases if cases else 0.0
    if pending:
        result.warnings.add(f"pending-failures: {pending}")
    acc.apply_to(result)
    result.duration_millis = acc.overall.total
    return result
