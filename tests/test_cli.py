"""CLI tests for qagate — every subcommand through typer's CliRunner.

Suites here run a real ``python -c`` child that writes a small browser
report into ``QAGATE_OUTPUT_DIR``.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
from typer.testing import CliRunner

from conftest import write_suite
from qagate.cli.app import app
from qagate.cli.health_check import detect_ci, run_checks
from qagate.config import QAGateConfig

runner = CliRunner()

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX-only")

REPORT_SCRIPT = (
    "import json, os\n"
    "specs = [{'title': 'case %d' % i, 'ok': True,"
    " 'tests': [{'results': [{'duration': 100, 'status': 'passed'}]}]} for i in range(5)]\n"
    "doc = {'stats': {'expected': 5, 'unexpected': 0, 'flaky': 0, 'skipped': 0, 'duration': 500},"
    " 'suites': [{'title': 'smoke.spec.ts', 'specs': specs}]}\n"
    "with open(os.path.join(os.environ['QAGATE_OUTPUT_DIR'], 'results.json'), 'w') as fh:\n"
    "    json.dump(doc, fh)\n"
)


def _suite(**overrides) -> dict:
    suite = {
        "id": "smoke-ui",
        "kind": "browser",
        "command": [sys.executable, "-c", REPORT_SCRIPT],
        "environments": ["development"],
        "browsers": ["chromium"],
        "artifacts": ["results.json"],
        "timeout_ms": 60000,
    }
    suite.update(overrides)
    return suite


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in ("TEST_ENV", "ARTIFACT_ROOT", "BASE_URL", "API_BASE_URL", "CI", "GITHUB_ACTIONS"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def project(tmp_project_dir: Path) -> Path:
    write_suite(tmp_project_dir, _suite())
    return tmp_project_dir


@pytest.fixture
def root(tmp_path: Path) -> Path:
    return tmp_path / "store"


def _invoke(*args: str):
    return runner.invoke(app, list(args))


def _run(project: Path, root: Path, *extra: str):
    return _invoke("run", "--config", str(project), "--root", str(root), *extra)


def _summary(root: Path) -> dict:
    latest = (root / "latest").resolve()
    return json.loads((latest / "summary.json").read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# 1. Global options
# ---------------------------------------------------------------------------

class TestGlobal:
    def test_version(self):
        result = _invoke("--version")
        assert result.exit_code == 0
        assert "qagate v" in result.output

    def test_help_lists_commands(self):
        result = _invoke("--help")
        assert result.exit_code == 0
        for command in ("run", "aggregate", "trend", "health-check", "validate", "report"):
            assert command in result.output


# ---------------------------------------------------------------------------
# 2. validate
# ---------------------------------------------------------------------------

class TestValidate:
    def test_valid_project(self, project: Path):
        assert _invoke("validate", "--dir", str(project)).exit_code == 0

    def test_invalid_suite(self, project: Path):
        write_suite(project, _suite(id="broken", kind="bogus"))
        result = _invoke("validate", "--dir", str(project))
        assert result.exit_code == 1

    def test_duplicate_ids_across_files(self, project: Path):
        write_suite(project, _suite(), name="copy")
        assert _invoke("validate", "--dir", str(project)).exit_code == 1

    def test_missing_project_dir(self, tmp_path: Path):
        result = _invoke("validate", "--dir", str(tmp_path / "nowhere" / ".qagate"))
        assert result.exit_code == 2


# ---------------------------------------------------------------------------
# 3. run
# ---------------------------------------------------------------------------

class TestRun:
    def test_passing_run_json(self, project: Path, root: Path):
        result = _run(project, root, "--output", "json")
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["verdict"] == "pass"
        assert data["totals"]["cases"] == 5
        assert _summary(root)["runId"] == data["runId"]

    def test_passing_run_text(self, project: Path, root: Path):
        result = _run(project, root)
        assert result.exit_code == 0, result.output
        assert "smoke-ui" in result.output

    def test_slo_failure_exits_99(self, project: Path, root: Path):
        write_suite(project, _suite(slo={"p95": 50}))
        result = _run(project, root)
        assert result.exit_code == 99
        assert _summary(root)["verdict"] == "sloFail"

    def test_no_reports(self, project: Path, root: Path):
        assert _run(project, root, "--no-reports").exit_code == 0
        latest = (root / "latest").resolve()
        assert (latest / "summary.json").is_file()
        assert not (latest / "summary.junit.xml").exists()

    def test_zero_tasks_is_config_error(self, project: Path, root: Path):
        result = _run(project, root, "-e", "production")
        assert result.exit_code == 2
        assert not (root / "runs").exists()

    def test_unknown_suite_is_config_error(self, project: Path, root: Path):
        assert _run(project, root, "-s", "nope").exit_code == 2

    def test_bad_worker_count(self, project: Path, root: Path):
        assert _run(project, root, "--workers", "0").exit_code == 2

    def test_invalid_output_format(self, project: Path, root: Path):
        assert _run(project, root, "--output", "yaml").exit_code == 2

    def test_failing_command_is_fatal(self, project: Path, root: Path):
        write_suite(project, _suite(command=[sys.executable, "-c", "raise SystemExit(4)"]))
        result = _run(project, root)
        assert result.exit_code == 4
        assert _summary(root)["verdict"] == "fatal"


# ---------------------------------------------------------------------------
# 4. aggregate
# ---------------------------------------------------------------------------

class TestAggregate:
    def test_aggregate_latest_is_byte_identical(self, project: Path, root: Path):
        assert _run(project, root).exit_code == 0
        summary_path = (root / "latest").resolve() / "summary.json"
        original = summary_path.read_bytes()
        for _ in range(2):
            result = _invoke("aggregate", "--config", str(project), "--root", str(root))
            assert result.exit_code == 0, result.output
            assert summary_path.read_bytes() == original

    def test_aggregate_unknown_run(self, project: Path, root: Path):
        assert _run(project, root).exit_code == 0
        result = _invoke("aggregate", "QAG-RUN-missing", "--config", str(project), "--root", str(root))
        assert result.exit_code == 3


# ---------------------------------------------------------------------------
# 5. report and trend
# ---------------------------------------------------------------------------

class TestReport:
    def test_no_runs_yet(self, project: Path, root: Path):
        assert _invoke("report", "--config", str(project), "--root", str(root)).exit_code == 0

    def test_list_json(self, project: Path, root: Path):
        run_id = json.loads(_run(project, root, "--output", "json").stdout)["runId"]
        result = _invoke("report", "--list", "--format", "json", "--config", str(project), "--root", str(root))
        assert result.exit_code == 0
        runs = json.loads(result.stdout)
        assert [r["run_id"] for r in runs] == [run_id]
        assert runs[0]["verdict"] == "pass"

    def test_latest_and_unknown(self, project: Path, root: Path):
        assert _run(project, root).exit_code == 0
        assert _invoke("report", "--config", str(project), "--root", str(root)).exit_code == 0
        missing = _invoke("report", "QAG-RUN-nope", "--config", str(project), "--root", str(root))
        assert missing.exit_code == 1


class TestTrend:
    def test_no_history(self, project: Path, root: Path):
        assert _invoke("trend", "--config", str(project), "--root", str(root)).exit_code == 0

    def test_trend_after_two_runs(self, project: Path, root: Path):
        first = json.loads(_run(project, root, "--output", "json").stdout)["runId"]
        second = json.loads(_run(project, root, "--output", "json").stdout)["runId"]
        result = _invoke("trend", "--config", str(project), "--root", str(root), "--output", "json")
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["runId"] == second
        assert data["previousRunId"] == first
        assert set(data["metrics"]) >= {"passRate", "p95"}


# ---------------------------------------------------------------------------
# 6. health-check
# ---------------------------------------------------------------------------

class TestHealthCheck:
    def test_healthy_project(self, project: Path, root: Path):
        result = _invoke("health-check", "--config", str(project), "--root", str(root), "--output", "json")
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["healthy"] is True
        assert [c["check"] for c in data["checks"]] == [
            "project_dir",
            "suites",
            "tool:smoke-ui",
            "artifact_root",
            "ci",
        ]

    def test_missing_tool_fails(self, project: Path, root: Path):
        write_suite(project, _suite(command=["qagate-no-such-tool", "--run"]))
        result = _invoke("health-check", "--config", str(project), "--root", str(root))
        assert result.exit_code == 1

    def test_unreachable_url_is_a_warning(self, config: QAGateConfig, project: Path):
        results = run_checks(config, environ={"BASE_URL": "http://127.0.0.1:9/"})
        url_check = results[-1]
        assert url_check["check"] == "BASE_URL"
        assert url_check["status"] == "warning"

    def test_detect_ci(self):
        assert detect_ci({"GITHUB_ACTIONS": "true"}) == "GitHub Actions"
        assert detect_ci({"CI": "1"}) == "generic CI"
        assert detect_ci({}) is None
