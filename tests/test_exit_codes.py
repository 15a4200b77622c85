"""Unit tests for qagate.engine.exit_codes — verdict and exit code mapping."""

from __future__ import annotations

import pytest

from conftest import make_task
from qagate.engine.exit_codes import compute_verdict, exit_code_for


class TestComputeVerdict:
    @pytest.mark.parametrize(
        "states, verdict",
        [
            (["passed", "passed"], "pass"),
            (["passed", "skipped"], "pass"),
            (["passed", "failed"], "sloFail"),
            (["failed", "timeout"], "fatal"),
            (["passed", "errored"], "fatal"),
            (["passed", "running"], "fatal"),
            ([], "fatal"),
        ],
    )
    def test_verdicts(self, states, verdict):
        assert compute_verdict(states) == verdict


class TestExitCodeFor:
    def test_pass_and_slo_fail(self):
        assert exit_code_for("pass") == 0
        assert exit_code_for("sloFail") == 99

    def test_fatal_takes_first_non_zero_code_in_key_order(self):
        tasks = [
            make_task("zeta", "errored", browser=None, exit_code=5),
            make_task("alpha", "errored", browser=None, exit_code=4),
            make_task("beta", "passed", browser=None, exit_code=0),
        ]
        assert exit_code_for("fatal", tasks) == 4

    def test_fatal_skips_reserved_99(self):
        tasks = [make_task("alpha", "failed", exit_code=99), make_task("beta", "timeout", exit_code=124)]
        assert exit_code_for("fatal", tasks) == 124

    def test_fatal_without_codes_is_one(self):
        assert exit_code_for("fatal", [make_task(state="errored", exit_code=None)]) == 1
        assert exit_code_for("fatal") == 1
