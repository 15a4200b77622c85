"""qagate validate — Check suite definitions and config without running anything.

Parses every suite YAML file against the suite schema, checks ids are unique
across files and loads config.yaml. Use this to catch configuration mistakes
before a CI run does.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import typer
import yaml
from rich.panel import Panel

from qagate.cli._common import console, resolve_project_dir
from qagate.config import load_config
from qagate.engine.suites import suite_entries, suite_files, validate_suite_file
from qagate.errors import ConfigurationError
from qagate.models import EXIT_CONFIG_ERROR

# ── Severity ordering ─────────────────────────────────────────────────────

_SEVERITY_ORDER = {"error": 0, "warning": 1, "info": 2}


def _suite_ids(path: Path) -> list[str]:
    with open(path, encoding="utf-8") as fh:
        entries = suite_entries(yaml.safe_load(fh)) or []
    return [str(e["id"]) for e in entries if isinstance(e, dict) and e.get("id")]


def validate(
    project: Path | None = typer.Option(
        None,
        "--dir",
        "-d",
        help="qagate project directory. Defaults to auto-detected .qagate/ from cwd.",
    ),
    strict: bool = typer.Option(
        False,
        "--strict",
        help="Exit 1 on warnings as well as errors (default: exit 1 on errors only).",
    ),
) -> None:
    """Validate config.yaml and every suite definition without executing suites.

    \b
    Examples:
      qagate validate                 # Validate the project in cwd
      qagate validate --strict        # Fail on warnings too
    """
    project_dir = resolve_project_dir(project)

    if not project_dir.is_dir():
        console.print(
            Panel(
                f"[red]Project not initialized.[/red]\n\n"
                f"Looked for .qagate/ in: {project_dir.parent}\n\n"
                "Fix: create .qagate/suites/ with at least one suite file",
                title="[red]Not Initialized[/red]",
                border_style="red",
            )
        )
        raise typer.Exit(code=EXIT_CONFIG_ERROR)

    total_errors = 0
    total_warnings = 0

    # ── Config ─────────────────────────────────────────────────────────
    config_path = project_dir / "config.yaml"
    try:
        config = load_config(project_dir)
        config_issues: list[dict[str, Any]] = []
    except ConfigurationError as exc:
        config = None
        config_issues = [{"severity": "error", "field": "config", "message": str(exc)}]
    if config_path.is_file() or config_issues:
        total_errors += len(config_issues)
        _print_file_result(config_path, config_issues, project_dir)

    suites_dir = config.suites_dir if config is not None else project_dir / "suites"
    files = suite_files(suites_dir)

    # ── Suites ─────────────────────────────────────────────────────────
    seen: dict[str, Path] = {}
    for path in files:
        issues = validate_suite_file(path)
        if not any(i["severity"] == "error" for i in issues):
            for suite_id in _suite_ids(path):
                if suite_id in seen:
                    issues.append(
                        {
                            "severity": "error",
                            "field": "id",
                            "message": f"Duplicate suite id '{suite_id}' (also defined in {seen[suite_id].name})",
                        }
                    )
                else:
                    seen[suite_id] = path
        total_errors += sum(1 for i in issues if i["severity"] == "error")
        total_warnings += sum(1 for i in issues if i["severity"] == "warning")
        _print_file_result(path, issues, project_dir)

    if not files:
        console.print(
            Panel(
                "[red]No suite definitions found.[/red]\n\n"
                f"Looked in: {suites_dir}\n\n"
                "Add a <suite>.yaml file describing the command to run.",
                title="[red]No Suites[/red]",
                border_style="red",
            )
        )
        raise typer.Exit(code=1)

    # ── Summary ────────────────────────────────────────────────────────
    console.print()
    if total_errors == 0 and total_warnings == 0:
        console.print(
            Panel(
                f"[bold green]All files valid.[/bold green]  {len(seen)} suite(s) defined.",
                border_style="green",
            )
        )
    elif total_errors > 0:
        console.print(
            Panel(
                f"[bold red]Validation failed.[/bold red]  "
                f"{total_errors} error(s), {total_warnings} warning(s)\n\n"
                "Fix the errors above before running suites.",
                border_style="red",
            )
        )
        raise typer.Exit(code=1)
    elif strict:
        console.print(
            Panel(
                f"[bold yellow]Validation warnings found (--strict mode).[/bold yellow]  "
                f"{total_warnings} warning(s)",
                border_style="yellow",
            )
        )
        raise typer.Exit(code=1)
    else:
        console.print(
            Panel(
                f"[yellow]Validation passed with {total_warnings} warning(s).[/yellow]  "
                "Use [bold]--strict[/bold] to fail on warnings.",
                border_style="yellow",
            )
        )


def _print_file_result(path: Path, issues: list[dict[str, Any]], project_dir: Path) -> None:
    """Print validation results for a single file."""
    try:
        display_path = path.relative_to(project_dir.parent)
    except ValueError:
        display_path = path

    errors = [i for i in issues if i["severity"] == "error"]
    warnings = [i for i in issues if i["severity"] == "warning"]

    if not issues:
        console.print(f"  [green]✓[/green] [dim]{display_path}[/dim]  [green]OK[/green]")
        return

    if errors:
        status = f"[bold red]{len(errors)} error(s)[/bold red]"
        if warnings:
            status += f", [yellow]{len(warnings)} warning(s)[/yellow]"
        console.print(f"  [red]✗[/red] [bold]{display_path}[/bold]  {status}")
    else:
        console.print(f"  [yellow]![/yellow] [dim]{display_path}[/dim]  [yellow]{len(warnings)} warning(s)[/yellow]")

    for issue in sorted(issues, key=lambda i: _SEVERITY_ORDER.get(i["severity"], 99)):
        sev_label = {
            "error": "[bold red]ERROR[/bold red]",
            "warning": "[yellow]WARN[/yellow]",
            "info": "[dim]INFO[/dim]",
        }.get(issue["severity"], issue["severity"])
        field = issue.get("field", "")
        field_str = f"[dim] ({field})[/dim]" if field else ""
        console.print(f"      {sev_label}{field_str}  {issue['message']}")
