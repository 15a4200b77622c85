"""qagate report — List recorded runs and show their summaries.

Reads ``summary.json`` from each run directory; nothing is recomputed (use
``qagate aggregate`` for that). ``--open`` opens the HTML report.
"""

from __future__ import annotations

import json
import webbrowser
from pathlib import Path

import typer
from rich.panel import Panel
from rich.table import Table

from qagate.cli._common import (
    build_config,
    check_output_format,
    config_error,
    console,
    output_console,
    print_json,
)
from qagate.cli.run import print_summary_panel, print_task_table
from qagate.engine.artifact_store import HTML_FILE, LATEST_LINK, ArtifactStore
from qagate.errors import ArtifactStoreError, ConfigurationError

_VERDICT_STYLE = {
    "pass": "[green]PASS[/green]",
    "sloFail": "[yellow]SLO FAIL[/yellow]",
    "fatal": "[red]FATAL[/red]",
}


def _list_runs(store: ArtifactStore) -> list[dict]:
    """Metadata of every run that has a summary, newest first."""
    runs: list[dict] = []
    for run_id in store.list_runs():
        meta: dict = {"run_id": run_id}
        path = store.summary_path(run_id)
        if path.is_file():
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                meta["environment"] = data.get("environment", "?")
                meta["verdict"] = data.get("verdict")
                meta["exit_code"] = data.get("exitCode")
                meta["tasks"] = len(data.get("tasks") or [])
                meta["duration"] = (data.get("durationMillis") or 0) / 1000.0
                meta["start_time"] = data.get("startedAt", "?")
            except (json.JSONDecodeError, OSError):
                pass
        runs.append(meta)
    return runs


def _find_run_id(store: ArtifactStore, run_id: str | None) -> str | None:
    """Find a run by ID or prefix, or the latest run."""
    if not run_id or run_id == LATEST_LINK:
        latest = store.resolve_latest()
        if latest is not None:
            return latest
        runs = store.list_runs()
        return runs[0] if runs else None

    if store.run_dir(run_id).is_dir():
        return run_id

    # Partial match (prefix)
    matches = [r for r in store.list_runs() if r.startswith(run_id)]
    if len(matches) == 1:
        return matches[0]
    if len(matches) > 1:
        console.print(f"[yellow]Ambiguous run ID '{run_id}' matches {len(matches)} runs.[/yellow]")
    return None


def report(
    run_id: str | None = typer.Argument(
        None,
        help="Run ID to display (default: latest run). Supports prefix matching.",
    ),
    list_runs: bool = typer.Option(
        False,
        "--list",
        "-l",
        help="List all recorded runs.",
    ),
    output_format: str = typer.Option(
        "text",
        "--format",
        "-f",
        help="Report format: text or json.",
    ),
    open_report: bool = typer.Option(
        False,
        "--open",
        help="Open the HTML report in the default browser.",
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
) -> None:
    """View recorded qagate runs.

    Without arguments, shows the latest run. Use --list to see all recorded
    runs, or provide a RUN_ID to view a specific run.
    """
    check_output_format(output_format)
    try:
        config = build_config(project, root)
    except ConfigurationError as exc:
        config_error(exc)

    store = ArtifactStore(config.artifact_root, history_limit=config.history_limit)

    if not store.runs_dir.is_dir():
        console.print(
            Panel(
                f"[yellow]No runs directory:[/yellow] {store.runs_dir}\n\n"
                "No runs recorded yet. Run [bold]qagate run[/bold] first.",
                title="[yellow]No Runs[/yellow]",
                border_style="yellow",
            )
        )
        raise typer.Exit(code=0)

    # --list mode: show table of all runs
    if list_runs:
        runs = _list_runs(store)
        if output_format == "json":
            print_json(runs)
            return
        if not runs:
            console.print("[yellow]No runs found.[/yellow]")
            raise typer.Exit(code=0)

        table = Table(title="qagate Runs", border_style="cyan")
        table.add_column("Run ID", style="bold")
        table.add_column("Environment")
        table.add_column("Verdict")
        table.add_column("Exit", justify="right")
        table.add_column("Tasks", justify="right")
        table.add_column("Duration")
        table.add_column("Started")

        for r in runs:
            dur = r.get("duration", 0)
            table.add_row(
                r["run_id"],
                r.get("environment", "?"),
                _VERDICT_STYLE.get(r.get("verdict"), "[dim]?[/dim]"),
                str(r.get("exit_code", "-")),
                str(r.get("tasks", "-")),
                f"{dur:.1f}s" if dur else "-",
                r.get("start_time", "?"),
            )

        output_console.print()
        output_console.print(table)
        output_console.print()
        return

    # Single run view
    resolved = _find_run_id(store, run_id)
    if resolved is None:
        if run_id:
            console.print(f"[red]Run not found:[/red] {run_id}")
        else:
            console.print("[yellow]No runs found. Run [bold]qagate run[/bold] first.[/yellow]")
        raise typer.Exit(code=1)

    try:
        summary = store.load_summary(resolved)
    except ArtifactStoreError as exc:
        console.print(f"[yellow]No summary for run {resolved}:[/yellow] {exc}")
        console.print(f"Rebuild it with [bold]qagate aggregate {resolved}[/bold]")
        raise typer.Exit(code=1)

    if output_format == "json":
        print_json(summary.to_dict())
    else:
        print_task_table(summary)
        print_summary_panel(summary)

    # --open: open report in browser
    if open_report:
        html = store.run_dir(resolved) / HTML_FILE
        if html.is_file():
            webbrowser.open(f"file://{html.resolve()}")
            console.print(f"[dim]Opened: {html}[/dim]")
        else:
            console.print("[yellow]No HTML report to open (run was made with --no-reports).[/yellow]")
