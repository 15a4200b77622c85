"""qagate run — Execute the selected suites and gate on the result.

This is the primary command. It resolves config, expands the selected
suites into tasks, runs them through the scheduler, writes the reports and
exits with the verdict's exit code: 0 pass, 99 SLO failure, anything else
fatal.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Optional

import typer
from rich.panel import Panel
from rich.table import Table

from qagate.cli._common import (
    build_config,
    check_output_format,
    config_error,
    console,
    infra_error,
    output_console,
    print_json,
    split_csv,
)
from qagate.engine.aggregator import RunSummary
from qagate.errors import ConfigurationError, QAGateError
from qagate.models import PASSED, SKIPPED, VERDICT_PASS, VERDICT_SLO_FAIL

logger = logging.getLogger("qagate.cli.run")

_STATE_STYLE = {
    "passed": "[green]PASS[/green]",
    "failed": "[yellow]FAIL[/yellow]",
    "errored": "[red]ERROR[/red]",
    "timeout": "[red]TIMEOUT[/red]",
    "skipped": "[dim]SKIP[/dim]",
}


def _print_run_header(environment: str, suites: tuple[str, ...], browsers: tuple[str, ...], root: Path) -> None:
    """Print a styled header before the run starts."""
    info_lines = [
        f"[bold]Environment:[/bold]  {environment}",
        f"[bold]Suites:[/bold]       {', '.join(suites) or 'all'}",
        f"[bold]Browsers:[/bold]     {', '.join(browsers) or 'suite defaults'}",
        f"[bold]Artifacts:[/bold]    {root}",
    ]
    console.print()
    console.print(Panel("\n".join(info_lines), title="[bold cyan]qagate run[/bold cyan]", border_style="cyan"))
    console.print()


def print_task_table(summary: RunSummary) -> None:
    table = Table(title=f"Run {summary.run_id}", border_style="cyan")
    table.add_column("Suite", style="bold")
    table.add_column("Target")
    table.add_column("Result")
    table.add_column("Attempts", justify="right")
    table.add_column("Cases", justify="right")
    table.add_column("p95", justify="right")
    table.add_column("Why")

    for task in summary.tasks:
        totals = task.result.totals if task.result is not None else None
        p95 = task.result.aggregate_latency_millis.p95 if task.result is not None else None
        why = "; ".join(r.get("message") or r["code"] for r in task.reasons)
        table.add_row(
            task.key.suite_id,
            task.key.target,
            _STATE_STYLE.get(task.state, task.state) + (" [dim](flaky)[/dim]" if task.flaky else ""),
            f"{task.attempt}/{task.max_attempts}",
            f"{totals.passed}/{totals.cases}" if totals is not None else "-",
            f"{p95:.0f} ms" if p95 is not None else "-",
            why if task.state not in (PASSED, SKIPPED) else "",
        )

    output_console.print()
    output_console.print(table)


def print_summary_panel(summary: RunSummary) -> None:
    """Print the final summary panel."""
    if summary.verdict == VERDICT_PASS:
        border, verdict = "green", "[bold green]ALL SUITES PASSED[/bold green]"
    elif summary.verdict == VERDICT_SLO_FAIL:
        border, verdict = "yellow", "[bold yellow]SLO BUDGET MISSED[/bold yellow]"
    else:
        border, verdict = "red", "[bold red]RUN FAILED[/bold red]"

    states = ", ".join(f"{state} {count}" for state, count in summary.task_states.items())
    pass_rate = f"{summary.pass_rate:.1%}" if summary.pass_rate is not None else "-"
    case_rate = f"{summary.case_pass_rate:.1%}" if summary.case_pass_rate is not None else "-"
    summary_lines = [
        verdict,
        "",
        f"  Tasks:      {states}",
        f"  Cases:      {summary.totals.passed}/{summary.totals.cases} passed, "
        f"{summary.totals.failed} failed, {summary.totals.errored} errored",
        f"  Pass rate:  {pass_rate} of tasks, {case_rate} of cases",
        f"  Duration:   {summary.duration_millis / 1000.0:.1f}s",
        f"  Exit code:  {summary.exit_code}",
        f"  Run ID:     {summary.run_id}",
    ]
    if summary.flaky_tasks:
        summary_lines.append(f"  Flaky:      {', '.join(summary.flaky_tasks)}")
    if summary.trend is not None:
        changes = [f"{name} {m.trend}" for name, m in summary.trend.metrics.items() if m.trend != "stable"]
        summary_lines.append(f"  Trend:      {', '.join(changes) or 'stable'}")

    output_console.print()
    output_console.print(Panel("\n".join(summary_lines), border_style=border))
    output_console.print()


def run(
    environment: Optional[str] = typer.Option(
        None,
        "--environment",
        "-e",
        help="development, staging, production or all. Default: TEST_ENV, then config.",
    ),
    suites: Optional[str] = typer.Option(
        None,
        "--suites",
        "-s",
        help="Comma-separated suite ids. Default: every suite in the catalog.",
    ),
    browsers: Optional[str] = typer.Option(
        None,
        "--browsers",
        "-b",
        help="Comma-separated browsers for browser suites. Default: each suite's own set.",
    ),
    no_retry: bool = typer.Option(
        False,
        "--no-retry",
        help="Do not retry tasks that failed their SLO.",
    ),
    no_reports: bool = typer.Option(
        False,
        "--no-reports",
        help="Write summary.json only; skip the JUnit and HTML reports.",
    ),
    timeout_ms: Optional[int] = typer.Option(
        None,
        "--timeout-ms",
        help="Total run timeout in milliseconds; exceeding it cancels the run.",
    ),
    root: Optional[Path] = typer.Option(
        None,
        "--root",
        help="Artifact store root. Default: ARTIFACT_ROOT, then .qagate/artifacts.",
    ),
    project: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Project directory (.qagate/) or its config.yaml. Default: auto-detected from cwd.",
    ),
    workers: Optional[int] = typer.Option(
        None,
        "--workers",
        "-w",
        help="Maximum concurrent tasks. Default: min(cores, 4).",
    ),
    output_format: str = typer.Option(
        "text",
        "--output",
        "-o",
        help="Output format: text or json.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose logging.",
    ),
) -> None:
    """Run suites across environments and browsers and gate on their SLOs.

    Exit codes: 0 pass, 99 SLO failure, 2 configuration error, any other
    non-zero value is a fatal run (errored or timed-out tasks).
    """
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s  %(message)s")

    check_output_format(output_format)

    try:
        config = build_config(project, root, workers)
    except ConfigurationError as exc:
        config_error(exc)

    from qagate.engine.orchestrator import QAGateOrchestrator, RunOptions

    options = RunOptions(
        environment=environment,
        suites=split_csv(suites),
        browsers=split_csv(browsers),
        retry_on_failure=not no_retry,
        emit_reports=not no_reports,
        timeout_millis=timeout_ms,
    )
    orchestrator = QAGateOrchestrator(config)

    if output_format == "text":
        _print_run_header(
            environment=environment or config.default_environment,
            suites=options.suites,
            browsers=options.browsers,
            root=config.artifact_root,
        )
        console.print("[bold]Running suites...[/bold]\n")

    start_time = time.monotonic()
    try:
        summary = orchestrator.run(options)
    except ConfigurationError as exc:
        config_error(exc)
    except QAGateError as exc:
        logger.exception("Run aborted")
        infra_error(exc)
    except Exception as exc:
        logger.exception("Unexpected error during run")
        infra_error(f"Unexpected error: {exc}")

    logger.debug("Run %s finished in %.1fs", summary.run_id, time.monotonic() - start_time)

    if output_format == "json":
        print_json(summary.to_dict())
    else:
        print_task_table(summary)
        print_summary_panel(summary)
        console.print(f"[dim]Reports: {orchestrator.store.run_dir(summary.run_id)}[/dim]\n")

    if summary.exit_code != 0:
        raise typer.Exit(code=summary.exit_code)
