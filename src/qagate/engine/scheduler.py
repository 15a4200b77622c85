"""Suite Scheduler — executes expanded tasks with concurrency, retry and timeouts.

The control thread never waits on a single child. Each worker thread owns
one task (and, through the Process Executor, its child process); the control
thread only blocks in ``concurrent.futures.wait`` over the set of running
futures, with a short tick so cancellation and the run timeout are observed
promptly.

Per attempt a worker:

1. reserves a fresh task directory
2. runs the suite command through the Process Executor
3. collects the artifacts matching the suite's globs
4. parses them with the parser registered for the suite kind
5. evaluates the SLO policy
6. persists ``attempt-<n>.json``
"""

from __future__ import annotations

import logging
import os
import re
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Any, Mapping

from qagate.engine.artifact_store import ArtifactStore, attempt_number
from qagate.engine.parsers import ParserRegistry
from qagate.engine.process_executor import (
    STDERR_LOG,
    STDOUT_LOG,
    ExecutionRequest,
    ProcessExecutor,
    tail_lines,
)
from qagate.engine.results import NormalizedResult
from qagate.engine.slo import SLOEvaluator
from qagate.engine.suites import SuiteDefinition
from qagate.engine.tasks import (
    AttemptOutcome,
    RunConfiguration,
    Task,
    infra_reason,
    slo_reason,
    utc_now_iso,
)
from qagate.errors import ArtifactStoreError, ParseFailure, QAGateError, SpawnError
from qagate.models import (
    CHILD_BASE_ENV_VARS,
    DEFAULT_GRACE_SECONDS,
    DEFAULT_LOG_TAIL_LINES,
    DEFAULT_TICK_SECONDS,
    ERRORED,
    EXIT_SPAWN_FAILED,
    FAILED,
    FATAL_STATES,
    PASSTHROUGH_ENV_VARS,
    TIMEOUT,
)

logger = logging.getLogger("qagate.engine.scheduler")

_TEMPLATE_RE = re.compile(r"\{\{(.+?)\}\}")
_LOG_FILES = (STDOUT_LOG, STDERR_LOG)


def render_template(value: str, variables: Mapping[str, Any]) -> str:
    """Replace ``{{name}}`` placeholders; unknown names are left in place."""

    def replacer(match: re.Match) -> str:
        name = match.group(1).strip()
        if name not in variables:
            logger.warning("Unresolved template variable: {{%s}}", name)
            return match.group(0)
        value = variables[name]
        return "" if value is None else str(value)

    return _TEMPLATE_RE.sub(replacer, value)


class SuiteScheduler:
    """Runs tasks to terminal states.

    Collaborators are injectable so tests can substitute a fake executor and
    construct isolated runs in-process.
    """

    def __init__(
        self,
        store: ArtifactStore,
        executor: ProcessExecutor | None = None,
        parsers: ParserRegistry | None = None,
        evaluator: SLOEvaluator | None = None,
        max_workers: int = 1,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
        log_tail_lines: int = DEFAULT_LOG_TAIL_LINES,
        base_env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
    ) -> None:
        self._store = store
        self._executor = executor or ProcessExecutor()
        self._parsers = parsers or ParserRegistry.default()
        self._evaluator = evaluator or SLOEvaluator()
        self._max_workers = max(1, max_workers)
        self._grace_seconds = grace_seconds
        self._tick_seconds = tick_seconds
        self._log_tail_lines = log_tail_lines
        self._base_env = os.environ if base_env is None else base_env
        self._cwd = cwd
        self._cancel_event = threading.Event()
        self._cancel_message = "run cancelled"

    # ── Cancellation ─────────────────────────────────────────────────────

    def cancel(self, message: str = "run cancelled") -> None:
        """Stop starting tasks and terminate running children. Safe from signal handlers."""
        if not self._cancel_event.is_set():
            self._cancel_message = message
            self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # ── Control loop ─────────────────────────────────────────────────────

    def run(self, run_config: RunConfiguration, tasks: list[Task]) -> list[Task]:
        """Drive every task to a terminal state and return them in key order."""
        pending: deque[Task] = deque(sorted(tasks, key=lambda t: t.key.sort_key()))
        running: dict[Future, Task] = {}
        busy_suites: set[str] = set()
        deadline = (
            time.monotonic() + run_config.timeout_millis / 1000.0 if run_config.timeout_millis else None
        )

        logger.info(
            "Scheduling %d task(s) for run %s with %d worker(s)",
            len(pending),
            run_config.run_id,
            self._max_workers,
        )
        with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="qagate-worker") as pool:
            while pending or running:
                if deadline is not None and time.monotonic() >= deadline:
                    self.cancel(f"run timeout of {run_config.timeout_millis} ms exceeded")

                if self.cancelled:
                    while pending:
                        self._cancel_unstarted(pending.popleft())
                else:
                    for task in list(pending):
                        if len(running) >= self._max_workers:
                            break
                        serial = task.suite is not None and not task.suite.parallel_within_suite
                        if serial and task.key.suite_id in busy_suites:
                            continue
                        pending.remove(task)
                        if serial:
                            busy_suites.add(task.key.suite_id)
                        running[pool.submit(self._run_task, run_config, task)] = task

                if not running:
                    continue
                done, _ = wait(running, timeout=self._tick_seconds, return_when=FIRST_COMPLETED)
                for future in done:
                    task = running.pop(future)
                    busy_suites.discard(task.key.suite_id)
                    # Workers convert every expected failure into task state;
                    # anything raised here is a programming error.
                    future.result()
                    logger.info("%s -> %s", task.key.slug, task.state)

        return sorted(tasks, key=lambda t: t.key.sort_key())

    def _cancel_unstarted(self, task: Task) -> None:
        task.mark_running()
        self._finish_unstarted(task)

    # ── Worker ───────────────────────────────────────────────────────────

    def _run_task(self, run_config: RunConfiguration, task: Task) -> None:
        task.mark_running()
        outcome: AttemptOutcome | None = None
        for attempt in range(1, task.max_attempts + 1):
            if self.cancelled:
                # Earlier attempts keep their records
                self._finish_unstarted(task, attempt)
                return
            outcome = self._attempt(run_config, task, attempt)
            task.record_attempt(outcome)
            if not self._should_retry(run_config, outcome, attempt, task.max_attempts):
                break
            self._persist(task, outcome, final=False)
            logger.info(
                "%s attempt %d/%d ended %s (%s); retrying",
                task.key.slug,
                attempt,
                task.max_attempts,
                outcome.state,
                ", ".join(outcome.reason_codes) or "no reason",
            )

        if outcome is None:
            raise QAGateError(f"{task.key.slug}: max_attempts must be at least 1")
        self._persist(task, outcome, final=True)
        task.finish(outcome)

    def _finish_unstarted(self, task: Task, attempt: int = 1) -> None:
        now = utc_now_iso()
        where = "before the task started" if attempt == 1 else f"before attempt {attempt}"
        outcome = AttemptOutcome(
            attempt=attempt,
            state=ERRORED,
            reasons=[infra_reason("cancelled", f"{self._cancel_message} {where}")],
            started_at=now,
            ended_at=now,
            cancelled=True,
            executed=False,
        )
        task.record_attempt(outcome)
        self._persist(task, outcome, final=True)
        task.finish(outcome)

    def _should_retry(self, run_config: RunConfiguration, outcome: AttemptOutcome, attempt: int, limit: int) -> bool:
        if attempt >= limit or outcome.cancelled or self.cancelled:
            return False
        if outcome.state == FAILED:
            return run_config.retry_on_failure and outcome.retryable
        if outcome.state in FATAL_STATES:
            return outcome.retryable
        return False

    def _persist(self, task: Task, outcome: AttemptOutcome, final: bool) -> None:
        path = self._store.task_dir(task.key) / f"attempt-{outcome.attempt}.json"
        try:
            self._store.commit_json(path, outcome.to_record(task, final))
        except ArtifactStoreError as exc:
            logger.error("Failed to persist %s: %s", path, exc)
            if outcome.state not in FATAL_STATES:
                outcome.state = ERRORED
            outcome.reasons = [*outcome.reasons, infra_reason("artifact-store", str(exc))]

    # ── One attempt ──────────────────────────────────────────────────────

    def _attempt(self, run_config: RunConfiguration, task: Task, attempt: int) -> AttemptOutcome:
        suite = task.suite
        if suite is None:
            raise QAGateError(f"{task.key.slug}: scheduled without its suite definition")
        outcome = AttemptOutcome(attempt=attempt, state=ERRORED, started_at=utc_now_iso())

        try:
            out_dir = self._store.reserve_task_dir(task.key, attempt)
        except ArtifactStoreError as exc:
            outcome.ended_at = utc_now_iso()
            outcome.reasons = [infra_reason("artifact-store", str(exc))]
            return outcome

        variables = {
            "run_id": run_config.run_id,
            "suite_id": suite.id,
            "environment": task.key.environment,
            "browser": task.key.browser or "",
            "output_dir": str(out_dir),
            "attempt": attempt,
        }
        request = ExecutionRequest(
            program=render_template(suite.program, variables),
            args=[render_template(arg, variables) for arg in suite.command[1:]],
            env=self._child_env(task, suite, out_dir, variables),
            output_dir=out_dir,
            timeout_millis=suite.timeout_millis,
            cwd=self._cwd,
            grace_seconds=self._grace_seconds,
            cancel_event=self._cancel_event,
        )

        logger.info("%s attempt %d/%d starting", task.key.slug, attempt, task.max_attempts)
        try:
            execution = self._executor.execute(request)
        except SpawnError as exc:
            outcome.ended_at = utc_now_iso()
            outcome.exit_code = EXIT_SPAWN_FAILED
            outcome.reasons = [infra_reason("spawn-failure", str(exc))]
            outcome.retryable = True
            outcome.logs = self._logs(out_dir)
            return outcome

        outcome.ended_at = utc_now_iso()
        outcome.exit_code = execution.exit_code
        outcome.wall_clock_millis = execution.wall_clock_millis
        outcome.timed_out = execution.timed_out
        outcome.logs = self._logs(out_dir)

        if execution.cancelled:
            outcome.cancelled = True
            outcome.reasons = [infra_reason("cancelled", self._cancel_message)]
            return outcome
        if execution.timed_out:
            outcome.state = TIMEOUT
            outcome.reasons = [
                infra_reason(
                    "timeout",
                    f"exceeded timeout of {suite.timeout_millis} ms",
                    value=float(execution.wall_clock_millis),
                )
            ]
            outcome.retryable = True
            return outcome

        artifacts = self._collect_artifacts(out_dir, suite.artifact_globs, variables)
        outcome.artifact_paths = [str(p.relative_to(out_dir)) for p in artifacts]
        if not artifacts:
            if execution.exit_code == 0:
                # Exit 0 with nothing to parse is a broken suite, not a flaky one
                outcome.result = NormalizedResult.empty(task.key)
                outcome.reasons = [infra_reason("empty-output", "exited 0 but produced no artifacts")]
            else:
                outcome.reasons = [
                    infra_reason(
                        "no-artifacts",
                        f"exited {execution.exit_code} and produced no artifacts",
                        value=float(execution.exit_code),
                    )
                ]
                outcome.retryable = True
            return outcome

        try:
            result = self._parsers.parse(suite.kind, artifacts, task.key)
        except ParseFailure as exc:
            outcome.reasons = [infra_reason("parse-failure", str(exc))]
            return outcome

        outcome.result = result
        if result.is_empty_output:
            outcome.reasons = [infra_reason("empty-output", "artifacts contained no results")]
            return outcome

        policy = run_config.slo.overlay(suite.slo)
        evaluation = self._evaluator.evaluate(result, policy, execution.exit_code)
        outcome.state = evaluation.state
        outcome.reasons = [slo_reason(r) for r in evaluation.reasons]
        outcome.retryable = not evaluation.deterministic
        return outcome

    def _child_env(self, task: Task, suite: SuiteDefinition, out_dir: Path, variables: Mapping[str, Any]) -> dict[str, str]:
        """Only what the child needs: never the harness's full environment."""
        env = {name: self._base_env[name] for name in CHILD_BASE_ENV_VARS if name in self._base_env}
        for name in PASSTHROUGH_ENV_VARS:
            if name in self._base_env:
                env[name] = self._base_env[name]
        env["TEST_ENV"] = task.key.environment
        if task.key.browser:
            env["BROWSER"] = task.key.browser
        env["QAGATE_RUN_ID"] = task.key.run_id
        env["QAGATE_SUITE_ID"] = task.key.suite_id
        env["QAGATE_OUTPUT_DIR"] = str(out_dir)
        env["QAGATE_ATTEMPT"] = str(variables["attempt"])
        for name, value in suite.env:
            env[name] = render_template(value, variables)
        return env

    @staticmethod
    def _collect_artifacts(out_dir: Path, globs: tuple[str, ...], variables: Mapping[str, Any]) -> list[Path]:
        found: dict[Path, None] = {}
        for pattern in globs:
            for path in sorted(out_dir.glob(render_template(pattern, variables))):
                if not path.is_file() or path.name in _LOG_FILES or attempt_number(path) is not None:
                    continue
                found[path] = None
        return list(found)

    def _logs(self, out_dir: Path) -> dict[str, list[str]]:
        return {
            "stdout": tail_lines(out_dir / STDOUT_LOG, self._log_tail_lines),
            "stderr": tail_lines(out_dir / STDERR_LOG, self._log_tail_lines),
        }
