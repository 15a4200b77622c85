"""Run configuration, tasks and task expansion.

A :class:`Task` is one fan-out of a suite for an (environment, browser?)
pair. Its public state moves monotonically::

    pending -> running -> {passed, failed, errored, timeout}

and is never touched again once terminal. Each attempt is persisted as
``attempt-<n>.json`` in the task directory; :meth:`Task.from_attempt_records`
rebuilds a task from those files alone.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
from typing import Any, Iterable

from qagate.engine.results import NormalizedResult, TaskKey
from qagate.engine.slo import SLOPolicy, SLOReason
from qagate.engine.suites import SuiteDefinition
from qagate.errors import ConfigurationError
from qagate.models import (
    ALL_ENVIRONMENTS,
    BROWSERS,
    ENVIRONMENTS,
    PASSED,
    PENDING,
    RUNNING,
    TERMINAL_STATES,
)

logger = logging.getLogger("qagate.engine.tasks")


def utc_now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat(timespec="milliseconds")


def parse_iso(value: str | None) -> dt.datetime | None:
    if not value:
        return None
    return dt.datetime.fromisoformat(value.replace("Z", "+00:00"))


def millis_between(start: str | None, end: str | None) -> int | None:
    begin, finish = parse_iso(start), parse_iso(end)
    if begin is None or finish is None:
        return None
    return int(round((finish - begin).total_seconds() * 1000))


def infra_reason(code: str, message: str, value: float | None = None) -> dict[str, Any]:
    """A non-SLO reason (cancelled, timeout, parse-failure, ...)."""
    return {"code": code, "metric": None, "value": value, "budget": None, "label": None, "message": message}


def slo_reason(reason: SLOReason) -> dict[str, Any]:
    data = reason.to_dict()
    data["message"] = reason.describe()
    return data


# ── Run configuration ───────────────────────────────────────────────────


@dataclasses.dataclass
class RunConfiguration:
    """Knobs for one invocation. Created once and then treated as read-only."""

    run_id: str
    environment: str
    started_at: str
    suite_selection: tuple[str, ...] = ()
    browser_selection: tuple[str, ...] = ()
    retry_on_failure: bool = True
    emit_reports: bool = True
    slo: SLOPolicy = dataclasses.field(default_factory=SLOPolicy)
    timeout_millis: int | None = None

    def validate(self) -> None:
        if self.environment not in ENVIRONMENTS and self.environment != ALL_ENVIRONMENTS:
            raise ConfigurationError(
                f"Unknown environment: {self.environment}\n\n"
                f"Valid environments: {', '.join(ENVIRONMENTS)}, {ALL_ENVIRONMENTS}"
            )
        unknown = [b for b in self.browser_selection if b not in BROWSERS]
        if unknown:
            raise ConfigurationError(
                f"Unknown browser(s): {', '.join(unknown)}\n\nValid browsers: {', '.join(BROWSERS)}"
            )
        if self.timeout_millis is not None and self.timeout_millis <= 0:
            raise ConfigurationError(f"Run timeout must be positive, got: {self.timeout_millis}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "environment": self.environment,
            "startedAt": self.started_at,
            "suiteSelection": list(self.suite_selection),
            "browserSelection": list(self.browser_selection),
            "retryOnFailure": self.retry_on_failure,
            "emitReports": self.emit_reports,
            "slo": self.slo.to_dict(),
            "timeoutMillis": self.timeout_millis,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunConfiguration:
        return cls(
            run_id=data["runId"],
            environment=data["environment"],
            started_at=data["startedAt"],
            suite_selection=tuple(data.get("suiteSelection") or ()),
            browser_selection=tuple(data.get("browserSelection") or ()),
            retry_on_failure=bool(data.get("retryOnFailure", True)),
            emit_reports=bool(data.get("emitReports", True)),
            slo=SLOPolicy.from_dict(data.get("slo") or {}),
            timeout_millis=data.get("timeoutMillis"),
        )


# ── Tasks ───────────────────────────────────────────────────────────────


@dataclasses.dataclass
class AttemptOutcome:
    """What one attempt produced. Serialized as ``attempt-<n>.json``."""

    attempt: int
    state: str
    reasons: list[dict[str, Any]] = dataclasses.field(default_factory=list)
    exit_code: int | None = None
    started_at: str | None = None
    ended_at: str | None = None
    wall_clock_millis: int = 0
    timed_out: bool = False
    cancelled: bool = False
    retryable: bool = False
    executed: bool = True
    artifact_paths: list[str] = dataclasses.field(default_factory=list)
    result: NormalizedResult | None = None
    logs: dict[str, list[str]] = dataclasses.field(default_factory=dict)

    @property
    def reason_codes(self) -> list[str]:
        return [r["code"] for r in self.reasons]

    def to_record(self, task: Task, final: bool) -> dict[str, Any]:
        return {
            "taskKey": task.key.to_dict(),
            "suite": {"kind": task.kind, "displayName": task.display_name},
            "attempt": self.attempt,
            "maxAttempts": task.max_attempts,
            "final": final,
            "executed": self.executed,
            "state": self.state,
            "reasons": self.reasons,
            "exitCode": self.exit_code,
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
            "wallClockMillis": self.wall_clock_millis,
            "timedOut": self.timed_out,
            "cancelled": self.cancelled,
            "retryable": self.retryable,
            "artifactPaths": self.artifact_paths,
            "result": self.result.to_dict() if self.result is not None else None,
            "logs": self.logs,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> AttemptOutcome:
        result = record.get("result")
        return cls(
            attempt=int(record["attempt"]),
            state=record["state"],
            reasons=list(record.get("reasons") or []),
            exit_code=record.get("exitCode"),
            started_at=record.get("startedAt"),
            ended_at=record.get("endedAt"),
            wall_clock_millis=int(record.get("wallClockMillis") or 0),
            timed_out=bool(record.get("timedOut", False)),
            cancelled=bool(record.get("cancelled", False)),
            retryable=bool(record.get("retryable", False)),
            executed=bool(record.get("executed", True)),
            artifact_paths=list(record.get("artifactPaths") or []),
            result=NormalizedResult.from_dict(result) if result else None,
            logs=dict(record.get("logs") or {}),
        )

    def history_entry(self) -> dict[str, Any]:
        return {
            "attempt": self.attempt,
            "state": self.state,
            "reasons": self.reason_codes,
            "exitCode": self.exit_code,
            "timedOut": self.timed_out,
            "wallClockMillis": self.wall_clock_millis,
        }


class InvalidTransition(RuntimeError):
    """A task was moved backwards or out of a terminal state."""


@dataclasses.dataclass
class Task:
    """One scheduler-expanded instance of a suite. Mutated only by its worker."""

    key: TaskKey
    kind: str
    display_name: str
    max_attempts: int = 1
    suite: SuiteDefinition | None = None
    state: str = PENDING
    attempt: int = 0
    started_at: str | None = None
    ended_at: str | None = None
    exit_code: int | None = None
    reasons: list[dict[str, Any]] = dataclasses.field(default_factory=list)
    artifact_paths: list[str] = dataclasses.field(default_factory=list)
    captured_logs: dict[str, list[str]] = dataclasses.field(default_factory=dict)
    result: NormalizedResult | None = None
    attempts: list[dict[str, Any]] = dataclasses.field(default_factory=list)
    wall_clock_millis: int = 0

    @classmethod
    def for_suite(cls, suite: SuiteDefinition, key: TaskKey) -> Task:
        return cls(
            key=key,
            kind=suite.kind,
            display_name=suite.display_name,
            max_attempts=suite.max_attempts,
            suite=suite,
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def flaky(self) -> bool:
        """Passed only after at least one attempt that did not pass."""
        return self.state == PASSED and any(a["state"] != PASSED for a in self.attempts[:-1])

    def mark_running(self) -> None:
        if self.state != PENDING:
            raise InvalidTransition(f"{self.key.slug}: cannot start from state {self.state}")
        self.state = RUNNING

    def record_attempt(self, outcome: AttemptOutcome) -> None:
        if self.is_terminal:
            raise InvalidTransition(f"{self.key.slug}: already terminal ({self.state})")
        if self.started_at is None:
            self.started_at = outcome.started_at
        self.attempt = outcome.attempt
        self.wall_clock_millis += outcome.wall_clock_millis
        self.attempts.append(outcome.history_entry())

    def finish(self, outcome: AttemptOutcome) -> None:
        """Apply the final attempt's outcome; the task is terminal afterwards."""
        if self.is_terminal:
            raise InvalidTransition(f"{self.key.slug}: already terminal ({self.state})")
        if outcome.state not in TERMINAL_STATES:
            raise InvalidTransition(f"{self.key.slug}: {outcome.state} is not a terminal state")
        self.state = outcome.state
        self.ended_at = outcome.ended_at
        self.exit_code = outcome.exit_code
        self.reasons = list(outcome.reasons)
        self.artifact_paths = list(outcome.artifact_paths)
        self.captured_logs = dict(outcome.logs)
        self.result = outcome.result
        if self.started_at is None:
            self.started_at = outcome.started_at

    @classmethod
    def from_attempt_records(cls, records: Iterable[dict[str, Any]]) -> Task:
        """Rebuild a task from its ``attempt-<n>.json`` files, in attempt order."""
        records = list(records)
        if not records:
            raise ValueError("a task needs at least one attempt record")
        outcomes = [AttemptOutcome.from_record(r) for r in records]
        last_record = records[-1]
        suite = last_record.get("suite") or {}
        task = cls(
            key=TaskKey.from_dict(last_record["taskKey"]),
            kind=suite.get("kind", ""),
            display_name=suite.get("displayName", ""),
            max_attempts=int(last_record.get("maxAttempts") or outcomes[-1].attempt),
            state=RUNNING,
        )
        for outcome in outcomes:
            task.record_attempt(outcome)
        final = outcomes[-1]
        if final.state in TERMINAL_STATES:
            task.finish(final)
        return task

    def to_dict(self, include_result: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "taskKey": self.key.to_dict(),
            "target": self.key.target,
            "kind": self.kind,
            "displayName": self.display_name,
            "state": self.state,
            "attempts": self.attempt,
            "maxAttempts": self.max_attempts,
            "attemptHistory": self.attempts,
            "flaky": self.flaky,
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
            "wallClockMillis": self.wall_clock_millis,
            "exitCode": self.exit_code,
            "reasons": self.reasons,
            "artifactPaths": self.artifact_paths,
            "capturedLogs": self.captured_logs,
        }
        if include_result:
            data["result"] = self.result.to_dict(include_digests=False) if self.result is not None else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        """Inverse of :meth:`to_dict`, used when reading a RunSummary."""
        result = data.get("result")
        return cls(
            key=TaskKey.from_dict(data["taskKey"]),
            kind=data.get("kind", ""),
            display_name=data.get("displayName", ""),
            max_attempts=int(data.get("maxAttempts", 1)),
            state=data["state"],
            attempt=int(data.get("attempts", 0)),
            started_at=data.get("startedAt"),
            ended_at=data.get("endedAt"),
            exit_code=data.get("exitCode"),
            reasons=list(data.get("reasons") or []),
            artifact_paths=list(data.get("artifactPaths") or []),
            captured_logs=dict(data.get("capturedLogs") or {}),
            result=NormalizedResult.from_dict(result) if result else None,
            attempts=list(data.get("attemptHistory") or []),
            wall_clock_millis=int(data.get("wallClockMillis", 0)),
        )


# ── Expansion ───────────────────────────────────────────────────────────


def _environments_for(suite: SuiteDefinition, environment: str) -> list[str]:
    if environment == ALL_ENVIRONMENTS:
        return [e for e in ENVIRONMENTS if e in suite.environment_allow_list]
    return [environment] if environment in suite.environment_allow_list else []


def _browsers_for(suite: SuiteDefinition, selection: tuple[str, ...]) -> list[str | None]:
    if not suite.is_browser_suite or not suite.browser_allow_list:
        return [None]
    if not selection:
        return sorted(suite.browser_allow_list)
    return sorted(suite.browser_allow_list & set(selection))


def expand_tasks(run_config: RunConfiguration, catalog: dict[str, SuiteDefinition]) -> list[Task]:
    """Expand (suite x environment x browser?) into pending tasks.

    Raises ConfigurationError for unknown suite ids and when nothing is left
    to run.
    """
    run_config.validate()
    selection = list(dict.fromkeys(run_config.suite_selection)) or sorted(catalog)
    unknown = [s for s in selection if s not in catalog]
    if unknown:
        raise ConfigurationError(
            f"Unknown suite id(s): {', '.join(unknown)}\n\nAvailable suites: {', '.join(sorted(catalog)) or '(none)'}"
        )

    tasks: list[Task] = []
    for suite_id in selection:
        suite = catalog[suite_id]
        environments = _environments_for(suite, run_config.environment)
        if not environments:
            logger.info("Suite %s does not run in %s; skipping", suite_id, run_config.environment)
            continue
        browsers = _browsers_for(suite, run_config.browser_selection)
        if not browsers:
            logger.info("Suite %s allows none of the selected browsers; skipping", suite_id)
            continue
        for environment in environments:
            for browser in browsers:
                key = TaskKey(run_config.run_id, suite.id, environment, browser)
                tasks.append(Task.for_suite(suite, key))

    if not tasks:
        raise ConfigurationError(
            "Zero tasks selected: no suite matches the requested environment and browsers\n\n"
            "To fix: check --environment, --suites and --browsers against the suite definitions"
        )
    tasks.sort(key=lambda t: t.key.sort_key())
    logger.info("Expanded %d task(s) for run %s", len(tasks), run_config.run_id)
    return tasks
