"""qagate Orchestrator — the explicit context of one invocation.

Loads the suite catalog, builds the RunConfiguration, expands tasks, drives
the scheduler, then rebuilds the RunSummary from disk and hands it to the
trend analyzer and the report emitter. No module-level state: tests build
isolated orchestrators with their own config and executor.

Write order at the end of a run:

1. ``run.json`` gets ``endedAt``
2. ``summary.json`` and the reports
3. ``history/summary-<ts>.json``
4. the ``latest`` pointer
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
import random
import signal
import sys
import threading
from typing import Any, Mapping

from qagate.config import QAGateConfig
from qagate.engine.aggregator import Aggregator, RunSummary
from qagate.engine.artifact_store import ArtifactStore, dump_json
from qagate.engine.process_executor import ProcessExecutor
from qagate.engine.report_emitter import ReportEmitter
from qagate.engine.scheduler import SuiteScheduler
from qagate.engine.suites import SuiteDefinition, load_suite_catalog
from qagate.engine.tasks import RunConfiguration, Task, expand_tasks, utc_now_iso
from qagate.engine.trend import TrendAnalyzer, TrendSnapshot
from qagate.errors import ArtifactStoreError
from qagate.models import DEFAULT_TICK_SECONDS

logger = logging.getLogger("qagate.engine.orchestrator")


@dataclasses.dataclass
class RunOptions:
    """Per-invocation choices coming from the command line."""

    environment: str | None = None
    suites: tuple[str, ...] = ()
    browsers: tuple[str, ...] = ()
    retry_on_failure: bool = True
    emit_reports: bool = True
    timeout_millis: int | None = None


class QAGateOrchestrator:
    """Coordinates a complete qagate run, re-aggregation or trend query."""

    def __init__(
        self,
        config: QAGateConfig,
        executor: ProcessExecutor | None = None,
        environ: Mapping[str, str] | None = None,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
    ) -> None:
        self._config = config
        self._executor = executor
        self._environ = environ
        self._tick_seconds = tick_seconds
        self.store = ArtifactStore(config.artifact_root, history_limit=config.history_limit)
        self._aggregator = Aggregator()
        self._emitter = ReportEmitter(self.store)
        self._trend = TrendAnalyzer(config.noise_floors, window=config.trend_window)
        self._scheduler: SuiteScheduler | None = None

    # ── Process Management ──────────────────────────────────────────────

    def cancel(self, message: str = "run cancelled") -> None:
        if self._scheduler is not None:
            self._scheduler.cancel(message)

    def _install_signal_handlers(self) -> dict[int, Any]:
        """Route SIGINT/SIGTERM to cancellation. Returns the handlers replaced."""
        if threading.current_thread() is not threading.main_thread():
            return {}

        def _handle(signum: int, frame: Any) -> None:
            logger.info("Received signal %d — cancelling run", signum)
            self.cancel(f"run cancelled by signal {signum}")

        previous: dict[int, Any] = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, _handle)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous: dict[int, Any]) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    # ── Run ──────────────────────────────────────────────────────────────

    def load_catalog(self) -> dict[str, SuiteDefinition]:
        return load_suite_catalog(self._config.suites_dir)

    def plan(self, options: RunOptions) -> tuple[RunConfiguration, list[Task]]:
        """Build the run configuration and expand its tasks. Touches no files."""
        run_config = RunConfiguration(
            run_id=self._generate_run_id(),
            environment=options.environment or self._config.default_environment,
            started_at=utc_now_iso(),
            suite_selection=tuple(options.suites),
            browser_selection=tuple(options.browsers),
            retry_on_failure=options.retry_on_failure,
            emit_reports=options.emit_reports,
            slo=self._config.slo,
            timeout_millis=options.timeout_millis,
        )
        tasks = expand_tasks(run_config, self.load_catalog())
        return run_config, tasks

    def run(self, options: RunOptions) -> RunSummary:
        """Execute a qagate run and return its summary.

        Configuration errors are raised before anything is written.
        """
        run_config, tasks = self.plan(options)
        logger.info(
            "qagate run %s starting — environment=%s, tasks=%d",
            run_config.run_id,
            run_config.environment,
            len(tasks),
        )

        manifest = {
            "runConfiguration": run_config.to_dict(),
            "tasks": [{**t.key.to_dict(), "kind": t.kind, "displayName": t.display_name} for t in tasks],
            "status": "running",
            "endedAt": None,
        }
        self.store.write_manifest(run_config.run_id, manifest)

        self._scheduler = SuiteScheduler(
            self.store,
            executor=self._executor,
            max_workers=self._config.max_workers,
            grace_seconds=self._config.grace_seconds,
            log_tail_lines=self._config.log_tail_lines,
            base_env=self._environ,
            tick_seconds=self._tick_seconds,
        )
        previous_handlers = self._install_signal_handlers()
        try:
            self._scheduler.run(run_config, tasks)
        finally:
            self._restore_signal_handlers(previous_handlers)
            manifest["status"] = "cancelled" if self._scheduler.cancelled else "completed"
            manifest["endedAt"] = utc_now_iso()
            self.store.write_manifest(run_config.run_id, manifest)

        summary = self._finalize(run_config.run_id, emit_reports=run_config.emit_reports)
        if self.store.publish_latest(run_config.run_id):
            logger.info("Published %s as latest", run_config.run_id)
        return summary

    # ── Aggregate / trend ────────────────────────────────────────────────

    def aggregate(self, run_id: str) -> RunSummary:
        """Rebuild summary and reports of an existing run from its directory."""
        run_id = self.store.resolve_run_id(run_id)
        if not self.store.run_dir(run_id).is_dir():
            raise ArtifactStoreError(f"Run not found: {self.store.run_dir(run_id)}")
        manifest = self.store.read_manifest(run_id)
        emit_reports = bool((manifest.get("runConfiguration") or {}).get("emitReports", True))
        return self._finalize(run_id, emit_reports=emit_reports)

    def _finalize(self, run_id: str, emit_reports: bool) -> RunSummary:
        summary = self._aggregator.rebuild(self.store, run_id)
        summary.trend = self._trend.analyze(summary, self.store.list_history())
        try:
            self._emitter.emit(summary, emit_reports=emit_reports)
            self.store.archive_summary(summary)
        except ArtifactStoreError as exc:
            logger.error("Could not store the summary of %s: %s", run_id, exc)
            # The verdict still reaches stdout when the disk refuses it
            sys.stdout.write(dump_json(summary.to_dict()))
            sys.stdout.flush()
            raise
        return summary

    def trend(self, limit: int | None = None) -> TrendSnapshot | None:
        """Trend of the newest archived run against the ones before it."""
        history = self.store.list_history()
        if not history:
            return None
        analyzer = self._trend if limit is None else TrendAnalyzer(self._config.noise_floors, window=limit)
        return analyzer.analyze(history[0], history[1:])

    # ── Utilities ────────────────────────────────────────────────────────

    @staticmethod
    def _generate_run_id() -> str:
        """Generate a unique run ID."""
        ts = dt.datetime.now(dt.timezone.utc).strftime("%Y%m%d-%H%M%S")
        # Add a short random suffix to avoid collisions
        suffix = "".join(random.choices("abcdefghijklmnopqrstuvwxyz0123456789", k=4))
        return f"QAG-RUN-{ts}-{suffix}"
