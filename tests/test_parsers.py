"""Unit tests for qagate.engine.parsers — one parser per tool family."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import write_browser_report, write_jtl
from qagate.engine.parsers import ParserRegistry
from qagate.engine.parsers.browser import parse_browser_report
from qagate.engine.parsers.contract import parse_contract_verification
from qagate.engine.parsers.http_collection import parse_http_collection
from qagate.engine.parsers.load import parse_load_csv, parse_load_stream
from qagate.engine.parsers.scanner import parse_scanner_report
from qagate.engine.results import TaskKey
from qagate.errors import ParseFailure

KEY = TaskKey("QAG-RUN-test", "suite", "development")


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# 1. Browser reports
# ---------------------------------------------------------------------------

class TestBrowserParser:
    def test_stats_and_spec_latencies(self, tmp_path: Path):
        path = write_browser_report(tmp_path / "results.json", [100.0] * 18 + [500.0, 900.0])
        result = parse_browser_report(path, KEY)
        assert result.totals.cases == 20
        assert result.totals.passed == 20
        assert result.aggregate_latency_millis.p95 == 500.0
        assert result.aggregate_latency_millis.p99 == 900.0
        assert result.error_rate == 0.0
        assert len(result.latency_millis_by_label) == 20

    def test_failed_specs_count(self, tmp_path: Path):
        path = write_browser_report(tmp_path / "results.json", [10.0, 20.0, 30.0, 40.0], failed=1)
        result = parse_browser_report(path, KEY)
        assert result.totals.failed == 1
        assert result.error_rate == 0.25
        assert result.aggregate_latency_millis.errors == 1

    def test_total_passed_failed_shape(self, tmp_path: Path):
        path = _write(tmp_path / "r.json", json.dumps({"stats": {"total": 5, "passed": 4, "failed": 1, "duration": 99}}))
        result = parse_browser_report(path, KEY)
        assert (result.totals.cases, result.totals.passed, result.totals.failed) == (5, 4, 1)
        assert result.duration_millis == 99

    def test_specs_only_report_derives_totals(self, tmp_path: Path):
        doc = {
            "suites": [
                {
                    "title": "a.spec.ts",
                    "specs": [{"title": "ok", "tests": [{"results": [{"duration": 5, "status": "passed"}]}]}],
                    "suites": [
                        {"title": "nested", "specs": [{"title": "bad", "ok": False, "tests": []}]},
                    ],
                }
            ]
        }
        result = parse_browser_report(_write(tmp_path / "r.json", json.dumps(doc)), KEY)
        assert result.totals.cases == 2
        assert result.totals.failed == 1
        assert "stats-derived-from-specs" in result.warnings
        assert "a.spec.ts › nested › bad" in result.latency_millis_by_label

    def test_truncated_json_is_parse_failure(self, tmp_path: Path):
        with pytest.raises(ParseFailure):
            parse_browser_report(_write(tmp_path / "r.json", '{"stats": {"expected": 3'), KEY)

    def test_unrecognized_document_is_parse_failure(self, tmp_path: Path):
        with pytest.raises(ParseFailure, match="neither"):
            parse_browser_report(_write(tmp_path / "r.json", '{"hello": 1}'), KEY)


# ---------------------------------------------------------------------------
# 2. HTTP collections
# ---------------------------------------------------------------------------

class TestHttpCollectionParser:
    def _doc(self) -> dict:
        return {
            "run": {
                "stats": {
                    "requests": {"total": 3, "failed": 0},
                    "assertions": {"total": 6, "failed": 1},
                },
                "timings": {
                    "started": "2026-01-01T00:00:00.000000000Z",
                    "completed": "2026-01-01T00:00:02.500000000Z",
                },
                "executions": [
                    {"item": {"name": "GET products"}, "response": {"responseTime": 120}},
                    {"item": {"name": "GET products"}, "response": {"responseTime": 80}},
                    {
                        "item": {"name": "POST order"},
                        "response": {"responseTime": 300},
                        "assertions": [{"assertion": "status 201", "error": {"message": "got 500"}}],
                    },
                ],
            }
        }

    def test_assertion_totals_and_error_rate(self, tmp_path: Path):
        result = parse_http_collection(_write(tmp_path / "n.json", json.dumps(self._doc())), KEY)
        assert result.totals.cases == 6
        assert result.totals.failed == 1
        assert result.error_rate == pytest.approx(1 / 6)

    def test_failed_requests_are_errored_cases(self, tmp_path: Path):
        doc = self._doc()
        doc["run"]["stats"]["requests"]["failed"] = 2
        totals = parse_http_collection(_write(tmp_path / "n.json", json.dumps(doc)), KEY).totals
        assert totals.errored == 2
        assert totals.cases == 8
        assert totals.passed + totals.failed + totals.skipped + totals.errored == totals.cases

    def test_duplicate_request_names_merge(self, tmp_path: Path):
        result = parse_http_collection(_write(tmp_path / "n.json", json.dumps(self._doc())), KEY)
        products = result.latency_millis_by_label["GET products"]
        assert products.samples == 2
        assert products.max == 120
        assert result.latency_millis_by_label["POST order"].errors == 1

    def test_nanosecond_timings_give_duration(self, tmp_path: Path):
        result = parse_http_collection(_write(tmp_path / "n.json", json.dumps(self._doc())), KEY)
        assert result.duration_millis == pytest.approx(2500.0)
        assert result.throughput_per_second == pytest.approx(3 / 2.5)

    def test_bare_run_object_accepted(self, tmp_path: Path):
        result = parse_http_collection(_write(tmp_path / "n.json", json.dumps(self._doc()["run"])), KEY)
        assert result.totals.cases == 6

    def test_truncated_artifact_is_parse_failure(self, tmp_path: Path):
        with pytest.raises(ParseFailure):
            parse_http_collection(_write(tmp_path / "n.json", '{"run": {"stats": '), KEY)

    def test_missing_stats_is_parse_failure(self, tmp_path: Path):
        with pytest.raises(ParseFailure, match="stats"):
            parse_http_collection(_write(tmp_path / "n.json", '{"run": {}}'), KEY)


# ---------------------------------------------------------------------------
# 3. Load streams and CSV logs
# ---------------------------------------------------------------------------

class TestLoadStreamParser:
    def test_samples_and_failures(self, tmp_path: Path):
        lines = []
        for i in range(10):
            lines.append(json.dumps({
                "type": "Point",
                "metric": "http_req_duration",
                "data": {"time": f"2026-01-01T00:00:0{i}Z", "value": 100 + i, "tags": {"endpoint": "/api/products"}},
            }))
        lines.append(json.dumps({"type": "Point", "metric": "http_req_failed",
                                 "data": {"value": 1, "tags": {"endpoint": "/api/products"}}}))
        result = parse_load_stream(_write(tmp_path / "k6.jsonl", "\n".join(lines)), KEY)
        assert result.sample_based
        assert result.totals.cases == 10
        assert result.totals.failed == 1
        assert result.error_rate == 0.1
        assert result.duration_millis == 9000
        assert result.latency_millis_by_label["/api/products"].samples == 10

    def test_summary_percentiles_preferred(self, tmp_path: Path):
        lines = [
            json.dumps({"metric": "http_req_duration", "value": 50, "tags": {"name": "home"}}),
            json.dumps({"metrics": {"http_req_duration": {"values": {"p(95)": 700, "p(99)": 650, "max": 900}},
                                    "http_req_failed": {"values": {"rate": 0.02}}}}),
        ]
        result = parse_load_stream(_write(tmp_path / "k6.jsonl", "\n".join(lines)), KEY)
        agg = result.aggregate_latency_millis
        assert agg.p95 == 700
        assert agg.p99 == 700  # raised to keep p95 <= p99
        assert result.error_rate == 0.02

    def test_malformed_lines_within_tolerance(self, tmp_path: Path):
        good = [json.dumps({"metric": "http_req_duration", "value": 10}) for _ in range(19)]
        result = parse_load_stream(_write(tmp_path / "k6.jsonl", "\n".join(good + ["{oops"])), KEY)
        assert "malformed-rows: 1" in result.warnings
        assert result.latency_millis_by_label["UNNAMED"].samples == 19

    def test_too_many_malformed_lines(self, tmp_path: Path):
        good = [json.dumps({"metric": "http_req_duration", "value": 10}) for _ in range(5)]
        with pytest.raises(ParseFailure, match="malformed"):
            parse_load_stream(_write(tmp_path / "k6.jsonl", "\n".join(good + ["{oops", "nope"])), KEY)

    def test_sub_millisecond_values_keep_percentiles_below_max(self, tmp_path: Path):
        lines = [json.dumps({"metric": "http_req_duration", "value": v, "tags": {"name": "home"}})
                 for v in (10.0, 123.4567)]
        path = _write(tmp_path / "k6.jsonl", "\n".join(lines))
        agg = ParserRegistry.default().parse("load-stream", [path], KEY).aggregate_latency_millis
        assert agg.min == 10.0
        assert agg.max == 123.457
        assert agg.p50 <= agg.p95 <= agg.p99 <= agg.max

    def test_no_duration_points_is_empty_output(self, tmp_path: Path):
        lines = [
            json.dumps({"type": "Metric", "metric": "http_req_duration", "data": {"type": "trend"}}),
            json.dumps({"type": "Point", "metric": "http_req_failed", "data": {"value": 0, "tags": {"name": "home"}}}),
        ]
        result = parse_load_stream(_write(tmp_path / "k6.jsonl", "\n".join(lines)), KEY)
        assert result.totals.cases == 0
        assert result.totals.errored == 1
        assert result.is_empty_output


class TestLoadCsvParser:
    def test_slo_scenario_distribution(self, tmp_path: Path):
        rows = [("GET /products", 100.0, True)] * 188 + [("GET /products", 100.0, False)]
        rows += [("GET /products", 900.0, True)] * 8 + [("GET /cart", 1200.0, True)] * 3
        result = parse_load_csv(write_jtl(tmp_path / "r.jtl", rows), KEY)
        assert result.totals.cases == 200
        assert result.error_rate == 0.005
        assert result.aggregate_latency_millis.p95 == 900.0
        assert result.aggregate_latency_millis.p99 == 1200.0
        assert result.latency_millis_by_label["GET /cart"].samples == 3

    def test_headerless_log_uses_default_columns(self, tmp_path: Path):
        content = "1700000000000,150,login,200,OK,t-1,text,true,,10,10,1,1,http://x,10,0,1\n" * 3
        result = parse_load_csv(_write(tmp_path / "r.jtl", content), KEY)
        assert result.totals.cases == 3
        assert "jtl-without-header" in result.warnings

    def test_malformed_rows_rejected_above_ten_percent(self, tmp_path: Path):
        path = write_jtl(tmp_path / "r.jtl", [("a", 10.0, True)] * 4)
        with open(path, "a", encoding="utf-8") as fh:
            fh.write("1700000009999,notanumber,a,200,true\n")
        with pytest.raises(ParseFailure):
            parse_load_csv(path, KEY)

    def test_header_only_log_is_empty_output(self, tmp_path: Path):
        path = write_jtl(tmp_path / "r.jtl", [])
        result = ParserRegistry.default().parse("load-csv", [path], KEY)
        assert result.totals.cases == 0
        assert result.totals.errored == 1
        assert result.is_empty_output


# ---------------------------------------------------------------------------
# 4. Scanner and contract results
# ---------------------------------------------------------------------------

class TestScannerParser:
    def test_pages_are_summed(self, tmp_path: Path):
        pages = [
            {"violations": [{"id": "color-contrast", "impact": "serious"}], "passes": [{}, {}], "inapplicable": [{}]},
            {"violations": [], "passes": [{}], "incomplete": [{}]},
        ]
        result = parse_scanner_report(_write(tmp_path / "axe.json", json.dumps(pages)), KEY)
        assert result.totals.failed == 1
        assert result.totals.passed == 3
        assert result.totals.skipped == 1
        assert result.totals.cases == 5
        assert result.error_rate == 0.25
        assert "violations-serious: 1" in result.warnings
        assert "needs-review: 1" in result.warnings

    def test_unrelated_document_is_parse_failure(self, tmp_path: Path):
        with pytest.raises(ParseFailure):
            parse_scanner_report(_write(tmp_path / "axe.json", '{"url": "x"}'), KEY)


class TestContractParser:
    def test_interactions(self, tmp_path: Path):
        doc = [
            {
                "consumer": "web",
                "interactions": [
                    {"description": "list products", "success": True, "durationMillis": 12},
                    {"description": "create order", "success": False, "durationMillis": 30},
                    {"description": "new endpoint", "success": False, "pending": True},
                ],
            }
        ]
        result = parse_contract_verification(_write(tmp_path / "pact.json", json.dumps(doc)), KEY)
        assert (result.totals.passed, result.totals.failed, result.totals.skipped) == (1, 1, 1)
        assert "web: create order" in result.latency_millis_by_label
        assert "pending-failures: 1" in result.warnings

    def test_no_interactions_is_parse_failure(self, tmp_path: Path):
        with pytest.raises(ParseFailure):
            parse_contract_verification(_write(tmp_path / "pact.json", '{"consumer": "web"}'), KEY)


# ---------------------------------------------------------------------------
# 5. Registry rules
# ---------------------------------------------------------------------------

class TestParserRegistry:
    def test_default_registry_covers_every_kind(self):
        assert ParserRegistry.default().kinds() == [
            "browser", "contract", "http-collection", "load-csv", "load-stream", "scanner",
        ]

    def test_unknown_kind_is_parse_failure(self, tmp_path: Path):
        with pytest.raises(ParseFailure, match="No parser"):
            ParserRegistry.default().parse("smoke", [tmp_path / "x"], KEY)

    def test_blank_artifact_is_empty_output(self, tmp_path: Path):
        path = _write(tmp_path / "results.json", "  \n")
        result = ParserRegistry.default().parse("browser", [path], KEY)
        assert result.totals.cases == 0
        assert result.totals.errored == 1
        assert result.is_empty_output

    def test_multiple_artifacts_are_merged(self, tmp_path: Path):
        a = write_browser_report(tmp_path / "a.json", [10.0, 20.0])
        b = write_browser_report(tmp_path / "b.json", [30.0], failed=1)
        result = ParserRegistry.default().parse("browser", [a, b], KEY)
        assert result.totals.cases == 3
        assert result.totals.failed == 1
        assert result.aggregate_latency_millis.samples == 3

    def test_empty_sibling_is_ignored(self, tmp_path: Path):
        a = write_browser_report(tmp_path / "a.json", [10.0])
        b = _write(tmp_path / "b.json", "")
        result = ParserRegistry.default().parse("browser", [a, b], KEY)
        assert result.totals.cases == 1
        assert "empty-artifact-ignored" in result.warnings
