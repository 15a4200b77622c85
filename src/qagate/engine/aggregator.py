"""Aggregator — folds per-task results into the run-level RunSummary.

Totals are the sum of the NormalizedResults of ``passed`` and ``failed``
tasks plus ``{errored: 1}`` for every errored, timed-out or unfinished task,
so no task is counted twice. Run-level percentiles come from the union of
the per-task latency digests, never from averaging percentiles.

The summary is always rebuilt from what is on disk (the run manifest and
the last attempt record of every task), which makes ``aggregate`` on an
existing run reproduce the original ``summary.json`` byte for byte.
"""

from __future__ import annotations

import dataclasses
import logging
from collections import Counter
from typing import TYPE_CHECKING, Any, Callable

from qagate.engine.exit_codes import compute_verdict, exit_code_for
from qagate.engine.results import LatencyStats, NormalizedResult, TaskKey, Totals, merge_results
from qagate.engine.tasks import RunConfiguration, Task, infra_reason, millis_between
from qagate.engine.trend import TrendSnapshot
from qagate.models import ERRORED, FAILED, PASSED, SKIPPED

if TYPE_CHECKING:
    from qagate.engine.artifact_store import ArtifactStore

logger = logging.getLogger("qagate.engine.aggregator")

ANY = "*"


def contribution(task: Task) -> NormalizedResult:
    """What a task adds to the run totals."""
    if task.state in (PASSED, FAILED):
        return task.result if task.result is not None else NormalizedResult(task_key=task.key)
    if task.state == SKIPPED:
        return NormalizedResult(task_key=task.key)
    # errored, timeout, or never finished
    return NormalizedResult(task_key=task.key, totals=Totals(errored=1))


@dataclasses.dataclass
class Breakdown:
    """A NormalizedResult-shaped roll-up over a group of tasks."""

    tasks: int
    states: dict[str, int]
    result: NormalizedResult

    def to_dict(self) -> dict[str, Any]:
        return {
            "tasks": self.tasks,
            "states": dict(sorted(self.states.items())),
            "result": self.result.to_dict(include_digests=False),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Breakdown:
        return cls(
            tasks=int(data.get("tasks", 0)),
            states={k: int(v) for k, v in (data.get("states") or {}).items()},
            result=NormalizedResult.from_dict(data["result"]),
        )


@dataclasses.dataclass
class RunSummary:
    """The run-level aggregation entity, written once per run."""

    run_id: str
    environment: str
    started_at: str
    ended_at: str
    verdict: str
    exit_code: int
    totals: Totals
    pass_rate: float | None
    case_pass_rate: float | None
    duration_millis: float
    error_rate: float
    aggregate_latency_millis: LatencyStats
    throughput_per_second: float | None
    by_suite: dict[str, Breakdown]
    by_environment: dict[str, Breakdown]
    by_target: dict[str, Breakdown]
    tasks: list[Task]
    flaky_tasks: list[str]
    artifact_dir: str
    configuration: dict[str, Any] = dataclasses.field(default_factory=dict)
    trend: TrendSnapshot | None = None

    @property
    def task_states(self) -> dict[str, int]:
        return dict(sorted(Counter(t.state for t in self.tasks).items()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "environment": self.environment,
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
            "verdict": self.verdict,
            "exitCode": self.exit_code,
            "totals": self.totals.to_dict(),
            "passRate": _round(self.pass_rate),
            "casePassRate": _round(self.case_pass_rate),
            "durationMillis": round(self.duration_millis, 3),
            "errorRate": round(self.error_rate, 6),
            "aggregateLatencyMillis": self.aggregate_latency_millis.to_dict(),
            "throughputPerSecond": _round(self.throughput_per_second),
            "taskStates": self.task_states,
            "breakdowns": {
                "suite": {k: b.to_dict() for k, b in sorted(self.by_suite.items())},
                "environment": {k: b.to_dict() for k, b in sorted(self.by_environment.items())},
                "target": {k: b.to_dict() for k, b in sorted(self.by_target.items())},
            },
            "tasks": [t.to_dict() for t in self.tasks],
            "flakyTasks": list(self.flaky_tasks),
            "artifactDir": self.artifact_dir,
            "configuration": self.configuration,
            "trend": self.trend.to_dict() if self.trend is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunSummary:
        breakdowns = data.get("breakdowns") or {}

        def _group(name: str) -> dict[str, Breakdown]:
            return {k: Breakdown.from_dict(v) for k, v in (breakdowns.get(name) or {}).items()}

        return cls(
            run_id=data["runId"],
            environment=data.get("environment", ""),
            started_at=data["startedAt"],
            ended_at=data.get("endedAt", ""),
            verdict=data["verdict"],
            exit_code=int(data.get("exitCode", 0)),
            totals=Totals.from_dict(data.get("totals") or {}),
            pass_rate=data.get("passRate"),
            case_pass_rate=data.get("casePassRate"),
            duration_millis=float(data.get("durationMillis", 0.0)),
            error_rate=float(data.get("errorRate", 0.0)),
            aggregate_latency_millis=LatencyStats.from_dict(data.get("aggregateLatencyMillis") or {}),
            throughput_per_second=data.get("throughputPerSecond"),
            by_suite=_group("suite"),
            by_environment=_group("environment"),
            by_target=_group("target"),
            tasks=[Task.from_dict(t) for t in data.get("tasks") or []],
            flaky_tasks=list(data.get("flakyTasks") or []),
            artifact_dir=data.get("artifactDir", ""),
            configuration=dict(data.get("configuration") or {}),
            trend=TrendSnapshot.from_dict(data["trend"]) if data.get("trend") else None,
        )


def _round(value: float | None) -> float | None:
    return round(value, 6) if value is not None else None


class Aggregator:
    """Builds RunSummaries from tasks, or from a run directory on disk."""

    def summarize(self, run_config: RunConfiguration, tasks: list[Task], ended_at: str) -> RunSummary:
        run_id = run_config.run_id
        tasks = sorted(tasks, key=lambda t: t.key.sort_key())
        stray = [t.key.slug for t in tasks if t.key.run_id != run_id]
        if stray:
            raise ValueError(f"tasks from another run in summary of {run_id}: {', '.join(stray)}")

        contributions = [(t, contribution(t)) for t in tasks]
        overall = merge_results(TaskKey(run_id, ANY, run_config.environment), [c for _, c in contributions])

        def _breakdown(key_of: Callable[[Task], str], group_key: Callable[[Task], TaskKey]) -> dict[str, Breakdown]:
            groups: dict[str, list[tuple[Task, NormalizedResult]]] = {}
            for task, result in contributions:
                groups.setdefault(key_of(task), []).append((task, result))
            return {
                name: Breakdown(
                    tasks=len(members),
                    states=dict(Counter(t.state for t, _ in members)),
                    result=merge_results(group_key(members[0][0]), [r for _, r in members]),
                )
                for name, members in groups.items()
            }

        by_suite = _breakdown(lambda t: t.key.suite_id, lambda t: TaskKey(run_id, t.key.suite_id, ANY))
        by_environment = _breakdown(lambda t: t.key.environment, lambda t: TaskKey(run_id, ANY, t.key.environment))
        by_target = _breakdown(
            lambda t: t.key.target,
            lambda t: TaskKey(run_id, ANY, t.key.environment, t.key.browser),
        )

        totals = overall.totals
        verdict = compute_verdict(t.state for t in tasks)
        passed_tasks = sum(1 for t in tasks if t.state == PASSED)
        summary = RunSummary(
            run_id=run_id,
            environment=run_config.environment,
            started_at=run_config.started_at,
            ended_at=ended_at,
            verdict=verdict,
            exit_code=exit_code_for(verdict, tasks),
            totals=totals,
            pass_rate=passed_tasks / len(tasks) if tasks else None,
            case_pass_rate=totals.passed / totals.cases if totals.cases else None,
            duration_millis=float(millis_between(run_config.started_at, ended_at) or 0),
            error_rate=overall.error_rate,
            aggregate_latency_millis=overall.aggregate_latency_millis,
            throughput_per_second=overall.throughput_per_second,
            by_suite=by_suite,
            by_environment=by_environment,
            by_target=by_target,
            tasks=tasks,
            flaky_tasks=[t.key.slug for t in tasks if t.flaky],
            artifact_dir=f"runs/{run_id}",
            configuration=run_config.to_dict(),
        )
        logger.info(
            "Run %s: verdict=%s tasks=%d cases=%d passed=%d failed=%d errored=%d",
            run_id,
            verdict,
            len(tasks),
            totals.cases,
            totals.passed,
            totals.failed,
            totals.errored,
        )
        return summary

    def rebuild(self, store: ArtifactStore, run_id: str) -> RunSummary:
        """Rebuild the summary of ``run_id`` from its manifest and attempt records."""
        manifest = store.read_manifest(run_id)
        run_config = RunConfiguration.from_dict(manifest["runConfiguration"])
        ended_at = manifest.get("endedAt") or run_config.started_at

        tasks: list[Task] = []
        for key_data in manifest.get("tasks") or []:
            key = TaskKey.from_dict(key_data)
            records = [store.read_json(p) for p in store.attempt_files(store.task_dir(key))]
            if records:
                tasks.append(Task.from_attempt_records(records))
                continue
            logger.warning("No attempt records for %s", key.slug)
            tasks.append(
                Task(
                    key=key,
                    kind=key_data.get("kind", ""),
                    display_name=key_data.get("displayName", ""),
                    state=ERRORED,
                    reasons=[infra_reason("missing-attempt", "no attempt record was written for this task")],
                )
            )
        return self.summarize(run_config, tasks, ended_at)
