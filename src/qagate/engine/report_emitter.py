"""Report Emitter — writes the run summary in three forms.

1. ``summary.json`` — the canonical machine document
2. ``summary.junit.xml`` — one ``testcase`` per task for CI
3. ``report.html`` — a human-readable index of every task's output directory

Each document is rendered deterministically from the RunSummary alone and
committed atomically through the Artifact Store, so rendering the same
summary twice produces byte-identical files.
"""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, select_autoescape

from qagate.engine.aggregator import RunSummary
from qagate.engine.artifact_store import HTML_FILE, JUNIT_FILE, SUMMARY_FILE, ArtifactStore, dump_json
from qagate.engine.tasks import Task
from qagate.models import FAILED, PASSED, SKIPPED

logger = logging.getLogger("qagate.engine.report_emitter")

_TEMPLATES_DIR = Path(__file__).parent / "templates"

# CSI and two-byte escape sequences emitted by coloured terminal output
_ANSI_ESCAPE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b[@-Z\\-_]")
# Characters XML 1.0 does not allow, even escaped
_XML_ILLEGAL = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\ud800-\udfff\ufffe\uffff]")


def xml_safe(text: str) -> str:
    """Strip terminal escapes and characters that cannot appear in an XML document."""
    return _XML_ILLEGAL.sub("", _ANSI_ESCAPE.sub("", text))


def _filter_format_millis(value: Any) -> str:
    """Format milliseconds for humans."""
    try:
        ms = float(value)
    except (TypeError, ValueError):
        return "-"
    if ms < 1000:
        return f"{ms:.0f} ms"
    secs = ms / 1000.0
    if secs < 60:
        return f"{secs:.1f}s"
    minutes = int(secs // 60)
    return f"{minutes}m {secs - minutes * 60:.0f}s"


def _filter_percent(value: Any) -> str:
    try:
        return f"{float(value) * 100:.1f}%"
    except (TypeError, ValueError):
        return "-"


def _filter_state_class(state: str) -> str:
    return {
        PASSED: "state-pass",
        FAILED: "state-fail",
        SKIPPED: "state-skip",
    }.get(state, "state-error")


def task_relative_dir(task: Task) -> str:
    """Task directory relative to the run directory."""
    parts = [task.key.suite_id, task.key.environment]
    if task.key.browser:
        parts.append(task.key.browser)
    return "/".join(parts) + "/"


class ReportEmitter:
    """Renders and commits the run reports."""

    def __init__(self, store: ArtifactStore) -> None:
        self._store = store
        self._jinja_env = Environment(
            loader=FileSystemLoader(str(_TEMPLATES_DIR)),
            autoescape=select_autoescape(["html", "j2"]),
            keep_trailing_newline=True,
        )
        self._jinja_env.filters["format_millis"] = _filter_format_millis
        self._jinja_env.filters["percent"] = _filter_percent
        self._jinja_env.filters["state_class"] = _filter_state_class
        self._jinja_env.filters["task_dir"] = task_relative_dir

    def emit(self, summary: RunSummary, emit_reports: bool = True) -> dict[str, Path]:
        """Write ``summary.json`` and, unless disabled, the JUnit and HTML reports."""
        run_dir = self._store.run_dir(summary.run_id)
        written = {"json": self._store.commit_file(run_dir / SUMMARY_FILE, self.render_json(summary))}
        if emit_reports:
            written["junit"] = self._store.commit_file(run_dir / JUNIT_FILE, self.render_junit(summary))
            written["html"] = self._store.commit_file(run_dir / HTML_FILE, self.render_html(summary))
        logger.info("Wrote %s for run %s", ", ".join(sorted(written)), summary.run_id)
        return written

    # ── Renderers ────────────────────────────────────────────────────────

    @staticmethod
    def render_json(summary: RunSummary) -> str:
        return dump_json(summary.to_dict())

    @staticmethod
    def render_junit(summary: RunSummary) -> str:
        root = ET.Element("testsuites")
        root.set("name", f"qagate-{summary.run_id}")
        root.set("tests", str(len(summary.tasks)))
        root.set("failures", str(sum(1 for t in summary.tasks if t.state not in (PASSED, SKIPPED))))
        root.set("skipped", str(sum(1 for t in summary.tasks if t.state == SKIPPED)))
        root.set("time", f"{summary.duration_millis / 1000.0:.3f}")

        by_suite: dict[str, list[Task]] = {}
        for task in summary.tasks:
            by_suite.setdefault(task.key.suite_id, []).append(task)

        for suite_id, tasks in sorted(by_suite.items()):
            testsuite = ET.SubElement(root, "testsuite")
            testsuite.set("name", suite_id)
            testsuite.set("tests", str(len(tasks)))
            testsuite.set("failures", str(sum(1 for t in tasks if t.state not in (PASSED, SKIPPED))))
            testsuite.set("skipped", str(sum(1 for t in tasks if t.state == SKIPPED)))
            testsuite.set("time", f"{sum(t.wall_clock_millis for t in tasks) / 1000.0:.3f}")

            for task in tasks:
                testcase = ET.SubElement(testsuite, "testcase")
                testcase.set("classname", suite_id)
                testcase.set("name", task.key.target)
                testcase.set("time", f"{task.wall_clock_millis / 1000.0:.3f}")
                if task.state == PASSED:
                    continue
                if task.state == SKIPPED:
                    ET.SubElement(testcase, "skipped")
                    continue
                failure = ET.SubElement(testcase, "failure")
                failure.set("type", task.state)
                failure.set("message", xml_safe("; ".join(r["code"] for r in task.reasons) or task.state))
                failure.text = _failure_text(task)

        tree = ET.ElementTree(root)
        ET.indent(tree, space="  ")
        return '<?xml version="1.0" encoding="utf-8"?>\n' + ET.tostring(root, encoding="unicode") + "\n"

    def render_html(self, summary: RunSummary) -> str:
        template = self._jinja_env.get_template("report.html.j2")
        return template.render(summary=summary, suites=sorted(summary.by_suite.items()))


def _failure_text(task: Task) -> str:
    lines = [r.get("message") or r["code"] for r in task.reasons]
    lines.append(f"state: {task.state}, attempts used: {task.attempt}/{task.max_attempts}")
    if task.exit_code is not None:
        lines.append(f"exit code: {task.exit_code}")
    stderr = task.captured_logs.get("stderr") or []
    if stderr:
        lines.append("stderr (tail):")
        lines.extend(stderr)
    return xml_safe("\n".join(lines))
