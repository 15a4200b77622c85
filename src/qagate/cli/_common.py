"""Helpers shared by the qagate subcommands."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.panel import Panel

from qagate.config import PROJECT_DIR_NAME, QAGateConfig, find_project_dir, load_config
from qagate.errors import ConfigurationError
from qagate.models import EXIT_CONFIG_ERROR, EXIT_INFRA_ERROR

console = Console(stderr=True)
output_console = Console()  # stdout for tables and panels of results

OUTPUT_FORMATS = ("text", "json")


def resolve_project_dir(project: Path | None) -> Path:
    """``--config`` may name the project directory or its parent."""
    if project is None:
        return find_project_dir()
    project = project.resolve()
    if project.is_file():
        return project.parent
    if project.name != PROJECT_DIR_NAME and (project / PROJECT_DIR_NAME).is_dir():
        return project / PROJECT_DIR_NAME
    return project


def build_config(
    project: Path | None = None,
    root: Path | None = None,
    workers: int | None = None,
) -> QAGateConfig:
    """Config with CLI flags applied over environment, file and defaults."""
    config = load_config(resolve_project_dir(project))
    if root is not None:
        config.artifact_root = root
    if workers is not None:
        config.max_workers = workers
    config.validate()
    return config


def check_output_format(output_format: str) -> None:
    if output_format not in OUTPUT_FORMATS:
        config_error(f"Invalid output format: {output_format}\n\nValid formats: {', '.join(OUTPUT_FORMATS)}")


def config_error(message: str | ConfigurationError) -> None:
    console.print(
        Panel(
            f"[red]{message}[/red]",
            title="[red]Config Error[/red]",
            border_style="red",
        )
    )
    raise typer.Exit(code=EXIT_CONFIG_ERROR)


def infra_error(message: str | Exception) -> None:
    console.print(
        Panel(
            f"[red]{message}[/red]\n\nRun with [bold]--verbose[/bold] for full traceback.",
            title="[red]Infrastructure Error[/red]",
            border_style="red",
        )
    )
    raise typer.Exit(code=EXIT_INFRA_ERROR)


def print_json(data: Any) -> None:
    """Plain JSON on stdout, untouched by Rich markup."""
    typer.echo(json.dumps(data, indent=2, sort_keys=True))


def split_csv(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())
