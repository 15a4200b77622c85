"""Shared fixtures for qagate unit tests."""

from __future__ import annotations

import json
import threading
import time
from pathlib import Path
from typing import Any, Callable

import pytest
import yaml

from qagate.config import QAGateConfig
from qagate.engine.aggregator import Aggregator, RunSummary
from qagate.engine.artifact_store import ArtifactStore
from qagate.engine.process_executor import STDERR_LOG, STDOUT_LOG, ExecutionRequest, ExecutionResult
from qagate.engine.results import LatencyAccumulator, NormalizedResult, TaskKey, Totals
from qagate.engine.suites import SuiteDefinition
from qagate.engine.tasks import AttemptOutcome, RunConfiguration, Task


# ---------------------------------------------------------------------------
# Artifact writers
# ---------------------------------------------------------------------------

def write_browser_report(path: Path, durations: list[float], failed: int = 0) -> Path:
    """Write a Playwright-style JSON report with one spec per duration."""
    specs = []
    for i, duration in enumerate(durations):
        ok = i >= failed
        specs.append(
            {
                "title": f"case {i}",
                "ok": ok,
                "tests": [{"results": [{"duration": duration, "status": "passed" if ok else "failed"}]}],
            }
        )
    doc = {
        "stats": {
            "expected": len(durations) - failed,
            "unexpected": failed,
            "flaky": 0,
            "skipped": 0,
            "duration": sum(durations),
        },
        "suites": [{"title": "checkout.spec.ts", "specs": specs}],
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(doc), encoding="utf-8")
    return path


def write_jtl(path: Path, rows: list[tuple[str, float, bool]]) -> Path:
    """Write a JMeter CSV log with a header row: (label, elapsed, success)."""
    lines = ["timeStamp,elapsed,label,responseCode,success"]
    for i, (label, elapsed, success) in enumerate(rows):
        lines.append(f"{1700000000000 + i * 100},{elapsed:g},{label},200,{'true' if success else 'false'}")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Fake executor
# ---------------------------------------------------------------------------

Step = Callable[[ExecutionRequest], Any]


class FakeExecutor:
    """Stands in for ProcessExecutor.

    ``script(request)`` writes whatever artifacts the attempt should leave
    behind and returns an exit code, ``"timeout"`` or ``"cancelled"``.
    """

    def __init__(self, script: Step) -> None:
        self._script = script
        self._lock = threading.Lock()
        self.requests: list[ExecutionRequest] = []
        self.active = 0
        self.max_active = 0

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        with self._lock:
            self.requests.append(request)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            request.output_dir.mkdir(parents=True, exist_ok=True)
            (request.output_dir / STDOUT_LOG).write_text("started\n", encoding="utf-8")
            (request.output_dir / STDERR_LOG).write_text("", encoding="utf-8")
            start = time.monotonic()
            outcome = self._script(request)
            wall = int((time.monotonic() - start) * 1000)
        finally:
            with self._lock:
                self.active -= 1

        if outcome == "timeout":
            return ExecutionResult(124, request.timeout_millis, request.output_dir / STDOUT_LOG,
                                   request.output_dir / STDERR_LOG, timed_out=True)
        if outcome == "cancelled":
            return ExecutionResult(1, wall, request.output_dir / STDOUT_LOG,
                                   request.output_dir / STDERR_LOG, cancelled=True)
        return ExecutionResult(int(outcome), wall, request.output_dir / STDOUT_LOG, request.output_dir / STDERR_LOG)


def attempt_of(request: ExecutionRequest) -> int:
    return int(request.env["QAGATE_ATTEMPT"])


# ---------------------------------------------------------------------------
# Fixture: temporary project directory with .qagate/ structure
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_project_dir(tmp_path: Path) -> Path:
    """Create a temporary .qagate/ project directory with a minimal config."""
    project_dir = tmp_path / ".qagate"
    (project_dir / "suites").mkdir(parents=True)
    config_data = {
        "default_environment": "development",
        "max_workers": 2,
        "grace_seconds": 1,
    }
    (project_dir / "config.yaml").write_text(yaml.dump(config_data, default_flow_style=False), encoding="utf-8")
    return project_dir


def write_suite(project_dir: Path, suite: dict[str, Any], name: str | None = None) -> Path:
    path = project_dir / "suites" / f"{name or suite['id']}.yaml"
    path.write_text(yaml.dump({"suite": suite}, default_flow_style=False), encoding="utf-8")
    return path


@pytest.fixture
def sample_suite_yaml() -> str:
    """Return a valid browser suite definition as a string."""
    return """\
suite:
  id: checkout-ui
  kind: browser
  display_name: Checkout UI
  command: ["npx", "playwright", "test", "--project={{browser}}"]
  environments: [development, staging]
  browsers: [chromium, firefox, webkit]
  timeout_ms: 60000
  max_attempts: 2
  parallel: true
  artifacts: ["results.json"]
  env:
    PLAYWRIGHT_JSON_OUTPUT_NAME: "{{output_dir}}/results.json"
  slo:
    p95: 1000
    p99: 2000
    error_rate: 0.01
"""


@pytest.fixture
def store(tmp_path: Path) -> ArtifactStore:
    return ArtifactStore(tmp_path / "artifacts", history_limit=5)


@pytest.fixture
def config(tmp_project_dir: Path) -> QAGateConfig:
    cfg = QAGateConfig.from_file(tmp_project_dir / "config.yaml")
    cfg.artifact_root = tmp_project_dir / "artifacts"
    return cfg


def make_suite(**overrides: Any) -> SuiteDefinition:
    data: dict[str, Any] = {
        "id": "checkout-ui",
        "kind": "browser",
        "command": ["run-suite"],
        "environments": ["development"],
        "browsers": ["chromium"],
        "artifacts": ["results.json"],
    }
    data.update(overrides)
    return SuiteDefinition.from_dict(data)


def make_run_config(**overrides: Any) -> RunConfiguration:
    data: dict[str, Any] = {
        "run_id": "QAG-RUN-20260101-000000-test",
        "environment": "development",
        "started_at": "2026-01-01T00:00:00.000+00:00",
    }
    data.update(overrides)
    return RunConfiguration(**data)


# ---------------------------------------------------------------------------
# Finished tasks and summaries
# ---------------------------------------------------------------------------

def make_result(key: TaskKey, durations: list[float], failed: int = 0) -> NormalizedResult:
    """A browser-style result: one case per duration, the first ``failed`` failing."""
    acc = LatencyAccumulator()
    for i, duration in enumerate(durations):
        acc.record(f"case {i}", duration, error=i < failed)
    result = NormalizedResult(task_key=key)
    acc.apply_to(result)
    result.totals = Totals(cases=len(durations), passed=len(durations) - failed, failed=failed)
    result.error_rate = failed / len(durations) if durations else 0.0
    result.duration_millis = sum(durations)
    return result


def make_task(
    suite_id: str = "checkout-ui",
    state: str = "passed",
    durations: list[float] | None = None,
    failed: int = 0,
    browser: str | None = "chromium",
    environment: str = "development",
    exit_code: int | None = 0,
    run_id: str = "QAG-RUN-20260101-000000-test",
) -> Task:
    """A task that has run one attempt to ``state``."""
    key = TaskKey(run_id, suite_id, environment, browser)
    task = Task(key=key, kind="browser", display_name=suite_id)
    task.mark_running()
    result = make_result(key, durations or [100.0], failed) if state in ("passed", "failed") else None
    outcome = AttemptOutcome(
        attempt=1,
        state=state,
        exit_code=exit_code,
        started_at="2026-01-01T00:00:00.000+00:00",
        ended_at="2026-01-01T00:00:02.000+00:00",
        wall_clock_millis=2000,
        result=result,
    )
    task.record_attempt(outcome)
    task.finish(outcome)
    return task


def make_summary(tasks: list[Task], **config_overrides: Any) -> RunSummary:
    run_config = make_run_config(**config_overrides)
    return Aggregator().summarize(run_config, tasks, ended_at="2026-01-01T00:00:10.000+00:00")
