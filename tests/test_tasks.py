"""Unit tests for qagate.engine.tasks — expansion and the task state machine."""

from __future__ import annotations

import pytest

from conftest import make_run_config, make_suite
from qagate.engine.results import NormalizedResult, TaskKey, Totals
from qagate.engine.tasks import (
    AttemptOutcome,
    InvalidTransition,
    RunConfiguration,
    Task,
    expand_tasks,
    millis_between,
)
from qagate.errors import ConfigurationError


def _catalog(*suites):
    return {s.id: s for s in suites}


def _catalog_of_three():
    return _catalog(
        make_suite(environments=["development", "staging"], browsers=["chromium", "firefox", "webkit"]),
        make_suite(id="orders-api", kind="http-collection", browsers=[], environments=["staging", "production"],
                   artifacts=["newman.json"]),
        make_suite(id="a11y", kind="scanner", browsers=["chromium"], environments=["development"],
                   artifacts=["axe.json"]),
    )


# ---------------------------------------------------------------------------
# 1. Expansion
# ---------------------------------------------------------------------------

class TestExpandTasks:
    def test_browser_suite_fans_out_per_browser(self):
        tasks = expand_tasks(make_run_config(), _catalog_of_three())
        assert [t.key.slug for t in tasks] == [
            "a11y:development",
            "checkout-ui:development/chromium",
            "checkout-ui:development/firefox",
            "checkout-ui:development/webkit",
        ]

    def test_browser_selection_intersects(self):
        tasks = expand_tasks(make_run_config(browser_selection=("firefox",)), _catalog_of_three())
        assert [t.key.target for t in tasks if t.key.suite_id == "checkout-ui"] == ["development/firefox"]
        assert any(t.key.suite_id == "a11y" for t in tasks)

    def test_all_environments(self):
        tasks = expand_tasks(make_run_config(environment="all", suite_selection=("orders-api",)), _catalog_of_three())
        assert [t.key.target for t in tasks] == ["production", "staging"]

    def test_suite_selection_is_deduplicated(self):
        config = make_run_config(environment="staging", suite_selection=("orders-api", "orders-api"))
        assert len(expand_tasks(config, _catalog_of_three())) == 1

    def test_unknown_suite_raises(self):
        with pytest.raises(ConfigurationError, match="Unknown suite id"):
            expand_tasks(make_run_config(suite_selection=("nope",)), _catalog_of_three())

    def test_zero_tasks_raise(self):
        with pytest.raises(ConfigurationError, match="Zero tasks"):
            expand_tasks(make_run_config(environment="production", suite_selection=("a11y",)), _catalog_of_three())

    def test_unknown_browser_raises(self):
        with pytest.raises(ConfigurationError, match="Unknown browser"):
            expand_tasks(make_run_config(browser_selection=("safari",)), _catalog_of_three())

    def test_tasks_start_pending(self):
        tasks = expand_tasks(make_run_config(), _catalog_of_three())
        assert {t.state for t in tasks} == {"pending"}
        assert all(t.attempt == 0 for t in tasks)


# ---------------------------------------------------------------------------
# 2. Run configuration
# ---------------------------------------------------------------------------

class TestRunConfiguration:
    def test_unknown_environment(self):
        with pytest.raises(ConfigurationError, match="Unknown environment"):
            make_run_config(environment="qa").validate()

    def test_non_positive_timeout(self):
        with pytest.raises(ConfigurationError, match="timeout"):
            make_run_config(timeout_millis=0).validate()

    def test_dict_round_trip(self):
        config = make_run_config(suite_selection=("a", "b"), retry_on_failure=False, timeout_millis=5000)
        assert RunConfiguration.from_dict(config.to_dict()) == config


# ---------------------------------------------------------------------------
# 3. State machine
# ---------------------------------------------------------------------------

def _task(max_attempts: int = 2) -> Task:
    suite = make_suite(max_attempts=max_attempts)
    return Task.for_suite(suite, TaskKey("QAG-RUN-test", suite.id, "development", "chromium"))


def _outcome(attempt: int, state: str, **kwargs) -> AttemptOutcome:
    return AttemptOutcome(
        attempt=attempt,
        state=state,
        started_at="2026-01-01T00:00:00.000+00:00",
        ended_at="2026-01-01T00:00:01.500+00:00",
        wall_clock_millis=1500,
        **kwargs,
    )


class TestTaskTransitions:
    def test_pending_running_passed(self):
        task = _task()
        task.mark_running()
        outcome = _outcome(1, "passed", exit_code=0)
        task.record_attempt(outcome)
        task.finish(outcome)
        assert task.state == "passed"
        assert task.attempt == 1
        assert task.exit_code == 0
        assert not task.flaky

    def test_cannot_start_twice(self):
        task = _task()
        task.mark_running()
        with pytest.raises(InvalidTransition):
            task.mark_running()

    def test_terminal_is_final(self):
        task = _task()
        task.mark_running()
        outcome = _outcome(1, "failed")
        task.record_attempt(outcome)
        task.finish(outcome)
        with pytest.raises(InvalidTransition):
            task.finish(_outcome(2, "passed"))
        with pytest.raises(InvalidTransition):
            task.record_attempt(_outcome(2, "passed"))

    def test_finish_requires_terminal_state(self):
        task = _task()
        task.mark_running()
        with pytest.raises(InvalidTransition):
            task.finish(_outcome(1, "running"))

    def test_flaky_after_failed_attempt(self):
        task = _task()
        task.mark_running()
        task.record_attempt(_outcome(1, "failed", reasons=[{"code": "p95"}]))
        final = _outcome(2, "passed", exit_code=0)
        task.record_attempt(final)
        task.finish(final)
        assert task.flaky
        assert task.wall_clock_millis == 3000
        assert [a["reasons"] for a in task.attempts] == [["p95"], []]

    def test_millis_between(self):
        assert millis_between("2026-01-01T00:00:00.000+00:00", "2026-01-01T00:00:01.500Z") == 1500
        assert millis_between(None, "2026-01-01T00:00:01Z") is None


# ---------------------------------------------------------------------------
# 4. Attempt records
# ---------------------------------------------------------------------------

class TestAttemptRecords:
    def test_rebuild_from_records(self):
        task = _task()
        key = task.key
        result = NormalizedResult(task_key=key, totals=Totals(cases=3, passed=3))
        first = _outcome(1, "failed", reasons=[{"code": "cases"}], exit_code=1)
        second = _outcome(2, "passed", exit_code=0, result=result, artifact_paths=["a/results.json"])
        records = [first.to_record(task, final=False), second.to_record(task, final=True)]

        rebuilt = Task.from_attempt_records(records)
        assert rebuilt.key == key
        assert rebuilt.state == "passed"
        assert rebuilt.attempt == 2
        assert rebuilt.max_attempts == 2
        assert rebuilt.flaky
        assert rebuilt.result.totals.cases == 3
        assert rebuilt.artifact_paths == ["a/results.json"]
        assert rebuilt.started_at == first.started_at

    def test_rebuild_needs_a_record(self):
        with pytest.raises(ValueError):
            Task.from_attempt_records([])

    def test_task_dict_round_trip(self):
        task = _task()
        task.mark_running()
        outcome = _outcome(1, "passed", exit_code=0, result=NormalizedResult(task_key=task.key))
        task.record_attempt(outcome)
        task.finish(outcome)
        restored = Task.from_dict(task.to_dict())
        assert restored.to_dict() == task.to_dict()
