"""Scanner parser — axe-style accessibility results.

One document (``{"violations": [...], "passes": [...]}``) or a list of them,
one per scanned page. ``totals.failed`` is the number of violated rules and
``totals.passed`` the number of passing rules; inapplicable rules count as
skipped.
"""

from __future__ import annotations

from collections import Counter
from pathlib import Path
from typing import Any

from qagate.engine.parsers._common import load_json_document
from qagate.engine.results import NormalizedResult, TaskKey, Totals
from qagate.errors import ParseFailure


def _pages(doc: Any, path: Path) -> list[dict[str, Any]]:
    pages = doc if isinstance(doc, list) else [doc]
    valid = [p for p in pages if isinstance(p, dict) and ("violations" in p or "passes" in p)]
    if not valid:
        raise ParseFailure(f"Scanner report {path.name} has no 'violations' or 'passes'", str(path))
    return valid


def parse_scanner_report(path: Path, task_key: TaskKey) -> NormalizedResult:
    pages = _pages(load_json_document(path), path)

    violations = passes = inapplicable = incomplete = 0
    impacts: Counter[str] = Counter()
    for page in pages:
        page_violations = page.get("violations") or []
        violations += len(page_violations)
        passes += len(page.get("passes") or [])
        inapplicable += len(page.get("inapplicable") or [])
        incomplete += len(page.get("incomplete") or [])
        for violation in page_violations:
            if isinstance(violation, dict) and violation.get("impact"):
                impacts[str(violation["impact"])] += 1

    result = NormalizedResult(task_key=task_key)
    checked = violations + passes
    result.totals = Totals(cases=checked + inapplicable, passed=passes, failed=violations, skipped=inapplicable)
    result.error_rate = violations / checked if checked else 0.0
    if incomplete:
        result.warnings.add(f"needs-review: {incomplete}")
    for impact, count in impacts.items():
        result.warnings.add(f"violations-{impact}: {count}")
    return result
