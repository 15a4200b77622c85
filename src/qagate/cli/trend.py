"""qagate trend — Show how the newest run compares with the runs before it."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from qagate.cli._common import (
    build_config,
    check_output_format,
    config_error,
    console,
    output_console,
    print_json,
)
from qagate.engine.trend import DEGRADING, IMPROVING
from qagate.errors import ConfigurationError

_TREND_STYLE = {
    IMPROVING: "[green]improving[/green]",
    DEGRADING: "[red]degrading[/red]",
}


def _fmt(value: float | None, metric: str) -> str:
    if value is None:
        return "-"
    if metric in ("passRate", "errorRate"):
        return f"{value:.2%}"
    return f"{value:.0f} ms"


def trend(
    limit: int | None = typer.Option(
        None,
        "--limit",
        "-n",
        min=1,
        help="Number of earlier runs to compare against. Default: trend_window from config.",
    ),
    root: Path | None = typer.Option(
        None,
        "--root",
        help="Artifact store root. Default: ARTIFACT_ROOT, then .qagate/artifacts.",
    ),
    project: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Project directory (.qagate/) or its config.yaml.",
    ),
    output_format: str = typer.Option(
        "text",
        "--output",
        "-o",
        help="Output format: text or json.",
    ),
) -> None:
    """Compare pass rate, duration, p95 latency and error rate across archived runs."""
    check_output_format(output_format)
    try:
        config = build_config(project, root)
    except ConfigurationError as exc:
        config_error(exc)

    from qagate.engine.orchestrator import QAGateOrchestrator

    snapshot = QAGateOrchestrator(config).trend(limit)
    if snapshot is None:
        console.print("[yellow]No archived runs yet. Run [bold]qagate run[/bold] first.[/yellow]")
        raise typer.Exit(code=0)

    if output_format == "json":
        print_json(snapshot.to_dict())
        return

    table = Table(
        title=f"Trend for {snapshot.run_id} vs {snapshot.previous_run_id or 'no earlier run'}",
        border_style="cyan",
    )
    table.add_column("Metric", style="bold")
    table.add_column("Current", justify="right")
    table.add_column("Previous", justify="right")
    table.add_column(f"Mean of {snapshot.window}", justify="right")
    table.add_column("Trend")

    for name, metric in snapshot.metrics.items():
        table.add_row(
            name,
            _fmt(metric.current, name),
            _fmt(metric.previous, name),
            _fmt(metric.window_mean, name),
            _TREND_STYLE.get(metric.trend, f"[dim]{metric.trend}[/dim]"),
        )

    output_console.print()
    output_console.print(table)
    output_console.print()
