"""Unit tests for qagate.engine.suites — suite YAML loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import write_suite
from qagate.engine.suites import (
    DEFAULT_TIMEOUT_MS,
    SuiteDefinition,
    load_suite_catalog,
    load_suite_file,
    suite_entries,
    validate_suite_file,
)
from qagate.errors import ConfigurationError


def _api_suite(**overrides) -> dict:
    data = {
        "id": "orders-api",
        "kind": "http-collection",
        "command": "newman run orders.json --reporters json --reporter-json-export '{{output_dir}}/newman.json'",
        "environments": ["development", "staging"],
        "artifacts": ["newman.json"],
    }
    data.update(overrides)
    return data


# ---------------------------------------------------------------------------
# 1. Loading
# ---------------------------------------------------------------------------

class TestLoadSuiteFile:
    def test_sample_suite_loads(self, tmp_path: Path, sample_suite_yaml: str):
        path = tmp_path / "checkout.yaml"
        path.write_text(sample_suite_yaml, encoding="utf-8")
        [suite] = load_suite_file(path)
        assert suite.id == "checkout-ui"
        assert suite.display_name == "Checkout UI"
        assert suite.browser_allow_list == frozenset({"chromium", "firefox", "webkit"})
        assert suite.max_attempts == 2
        assert suite.parallel_within_suite
        assert suite.slo.p95_lt_millis == 1000
        assert dict(suite.env)["PLAYWRIGHT_JSON_OUTPUT_NAME"] == "{{output_dir}}/results.json"

    def test_string_command_is_split_like_a_shell(self, tmp_path: Path):
        (tmp_path / "suites").mkdir()
        [suite] = load_suite_file(write_suite(tmp_path, _api_suite()))
        assert suite.command[:3] == ("newman", "run", "orders.json")
        assert suite.command[-1] == "{{output_dir}}/newman.json"
        assert suite.program == "newman"

    def test_defaults(self):
        suite = SuiteDefinition.from_dict(_api_suite())
        assert suite.display_name == "orders-api"
        assert suite.timeout_millis == DEFAULT_TIMEOUT_MS
        assert suite.max_attempts == 1
        assert not suite.parallel_within_suite
        assert suite.slo is None
        assert not suite.is_browser_suite

    def test_multi_suite_file(self, tmp_path: Path):
        path = tmp_path / "all.yaml"
        path.write_text(
            "suites:\n"
            "  - {id: a, kind: scanner, command: [axe], environments: [staging], artifacts: [axe.json]}\n"
            "  - {id: b, kind: contract, command: [pact], environments: [staging], artifacts: [pact.json]}\n",
            encoding="utf-8",
        )
        assert [s.id for s in load_suite_file(path)] == ["a", "b"]

    def test_suite_entries_shapes(self):
        assert suite_entries({"suite": {"id": "a"}}) == [{"id": "a"}]
        assert suite_entries({"suites": [{"id": "a"}]}) == [{"id": "a"}]
        assert suite_entries({"id": "a"}) == [{"id": "a"}]
        assert suite_entries(["a"]) is None
        assert suite_entries({"suites": "a"}) is None


# ---------------------------------------------------------------------------
# 2. Validation issues
# ---------------------------------------------------------------------------

class TestValidateSuiteFile:
    def _issues(self, tmp_path: Path, suite: dict) -> list[dict]:
        project = tmp_path / "project"
        (project / "suites").mkdir(parents=True, exist_ok=True)
        return validate_suite_file(write_suite(project, suite))

    def test_valid_suite_has_no_issues(self, tmp_path: Path):
        assert self._issues(tmp_path, _api_suite()) == []

    def test_missing_required_field(self, tmp_path: Path):
        suite = _api_suite()
        del suite["artifacts"]
        issues = self._issues(tmp_path, suite)
        assert [i["severity"] for i in issues] == ["error"]
        assert "artifacts" in issues[0]["message"]

    def test_unknown_kind_and_environment(self, tmp_path: Path):
        issues = self._issues(tmp_path, _api_suite(kind="smoke", environments=["qa"]))
        fields = {i["field"] for i in issues}
        assert "suite.kind" in fields
        assert "suite.environments.0" in fields

    def test_unknown_key_is_rejected(self, tmp_path: Path):
        issues = self._issues(tmp_path, _api_suite(retries=3))
        assert issues and issues[0]["severity"] == "error"

    def test_error_rate_out_of_range(self, tmp_path: Path):
        issues = self._issues(tmp_path, _api_suite(slo={"error_rate": 2}))
        assert issues[0]["field"] == "suite.slo.error_rate"

    def test_browser_suite_without_browsers_warns(self, tmp_path: Path):
        issues = self._issues(tmp_path, _api_suite(kind="browser"))
        assert [(i["severity"], i["field"]) for i in issues] == [("warning", "suite.browsers")]

    def test_browsers_on_non_browser_suite_warn(self, tmp_path: Path):
        issues = self._issues(tmp_path, _api_suite(browsers=["firefox"]))
        assert issues[0]["severity"] == "warning"
        assert "ignored" in issues[0]["message"]

    def test_yaml_syntax_error(self, tmp_path: Path):
        path = tmp_path / "bad.yaml"
        path.write_text("suite: [unclosed\n", encoding="utf-8")
        assert validate_suite_file(path)[0]["field"] == "yaml_syntax"

    def test_non_mapping_root(self, tmp_path: Path):
        path = tmp_path / "bad.yaml"
        path.write_text("- one\n- two\n", encoding="utf-8")
        assert validate_suite_file(path)[0]["field"] == "root"

    def test_load_raises_with_fix_hint(self, tmp_path: Path):
        project = tmp_path / "project"
        (project / "suites").mkdir(parents=True)
        path = write_suite(project, _api_suite(kind="smoke"))
        with pytest.raises(ConfigurationError, match="qagate validate"):
            load_suite_file(path)


# ---------------------------------------------------------------------------
# 3. Catalog
# ---------------------------------------------------------------------------

class TestLoadSuiteCatalog:
    def test_catalog_keyed_by_id(self, tmp_project_dir: Path):
        write_suite(tmp_project_dir, _api_suite())
        write_suite(tmp_project_dir, _api_suite(id="search-api"))
        catalog = load_suite_catalog(tmp_project_dir / "suites")
        assert sorted(catalog) == ["orders-api", "search-api"]

    def test_yml_extension_is_picked_up(self, tmp_project_dir: Path):
        write_suite(tmp_project_dir, _api_suite())
        (tmp_project_dir / "suites" / "orders-api.yaml").rename(tmp_project_dir / "suites" / "orders.yml")
        assert list(load_suite_catalog(tmp_project_dir / "suites")) == ["orders-api"]

    def test_duplicate_ids_raise(self, tmp_project_dir: Path):
        write_suite(tmp_project_dir, _api_suite(), name="one")
        write_suite(tmp_project_dir, _api_suite(), name="two")
        with pytest.raises(ConfigurationError, match="Duplicate suite id 'orders-api'"):
            load_suite_catalog(tmp_project_dir / "suites")

    def test_no_suite_files_raise(self, tmp_project_dir: Path):
        with pytest.raises(ConfigurationError, match="No suite definitions"):
            load_suite_catalog(tmp_project_dir / "suites")

    def test_missing_directory_raises(self, tmp_path: Path):
        with pytest.raises(ConfigurationError):
            load_suite_catalog(tmp_path / "nowhere")
