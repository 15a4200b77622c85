"""qagate engine — scheduling, parsing, judging and reporting of suite runs.

- ArtifactStore: on-disk layout of runs, latest pointer and history
- ProcessExecutor: spawns suite commands with timeouts and explicit environment
- ParserRegistry: tool-native artifacts to NormalizedResult, keyed by suite kind
- SLOEvaluator: judges a NormalizedResult against an SLOPolicy
- SuiteScheduler: runs expanded tasks with concurrency and retry policies
- Aggregator: folds task results into a RunSummary
- TrendAnalyzer: compares a RunSummary with archived ones
- ReportEmitter: JSON, JUnit and HTML reports
"""

from qagate.engine.aggregator import Aggregator, RunSummary
from qagate.engine.artifact_store import ArtifactStore
from qagate.engine.digest import LatencyDigest
from qagate.engine.parsers import ParserRegistry
from qagate.engine.process_executor import ExecutionRequest, ExecutionResult, ProcessExecutor
from qagate.engine.report_emitter import ReportEmitter
from qagate.engine.results import LatencyStats, NormalizedResult, TaskKey, Totals
from qagate.engine.scheduler import SuiteScheduler
from qagate.engine.slo import SLOEvaluator, SLOPolicy
from qagate.engine.suites import SuiteDefinition
from qagate.engine.tasks import RunConfiguration, Task
from qagate.engine.trend import TrendAnalyzer, TrendSnapshot

# QAGateOrchestrator is NOT imported here: it depends on qagate.config, which
# itself imports qagate.engine.slo. Import it from its module:
#   from qagate.engine.orchestrator import QAGateOrchestrator

__all__ = [
    "Aggregator",
    "ArtifactStore",
    "ExecutionRequest",
    "ExecutionResult",
    "LatencyDigest",
    "LatencyStats",
    "NormalizedResult",
    "ParserRegistry",
    "ProcessExecutor",
    "ReportEmitter",
    "RunConfiguration",
    "RunSummary",
    "SLOEvaluator",
    "SLOPolicy",
    "SuiteDefinition",
    "SuiteScheduler",
    "Task",
    "TaskKey",
    "Totals",
    "TrendAnalyzer",
    "TrendSnapshot",
]
