"""Exit Coder — maps a run verdict to the process exit code.

``pass`` -> 0, ``sloFail`` -> 99, ``fatal`` -> the first non-zero task exit
code (in task key order) that is not the reserved 99, or 1 when none is
available. 99 stays reserved so CI can tell "tests missed their budget"
apart from "the harness or a suite broke".
"""

from __future__ import annotations

from typing import Iterable

from qagate.engine.tasks import Task
from qagate.models import (
    EXIT_FATAL_DEFAULT,
    EXIT_PASS,
    EXIT_SLO_FAIL,
    FAILED,
    FATAL_STATES,
    PASSED,
    SKIPPED,
    VERDICT_FATAL,
    VERDICT_PASS,
    VERDICT_SLO_FAIL,
)


def compute_verdict(states: Iterable[str]) -> str:
    """``fatal`` if any task is errored, timed out or unfinished; else ``sloFail`` if any failed."""
    states = list(states)
    if not states:
        return VERDICT_FATAL
    if any(s in FATAL_STATES or s not in (PASSED, FAILED, SKIPPED) for s in states):
        return VERDICT_FATAL
    if any(s == FAILED for s in states):
        return VERDICT_SLO_FAIL
    return VERDICT_PASS


def exit_code_for(verdict: str, tasks: Iterable[Task] = ()) -> int:
    if verdict == VERDICT_PASS:
        return EXIT_PASS
    if verdict == VERDICT_SLO_FAIL:
        return EXIT_SLO_FAIL
    for task in sorted(tasks, key=lambda t: t.key.sort_key()):
        if task.exit_code not in (None, EXIT_PASS, EXIT_SLO_FAIL):
            return int(task.exit_code)
    return EXIT_FATAL_DEFAULT
