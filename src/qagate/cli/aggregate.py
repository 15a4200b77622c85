"""qagate aggregate — Rebuild the summary and reports of an existing run.

Everything is recomputed from the run directory (``run.json`` plus every
``attempt-N.json``), so aggregating the same directory twice writes
byte-identical ``summary.json`` files.
"""

from __future__ import annotations

import logging
from pathlib import Path

import typer

from qagate.cli._common import (
    build_config,
    check_output_format,
    config_error,
    console,
    infra_error,
    print_json,
)
from qagate.cli.run import print_summary_panel, print_task_table
from qagate.errors import ArtifactStoreError, ConfigurationError

logger = logging.getLogger("qagate.cli.aggregate")


def aggregate(
    run_id: str = typer.Argument(
        "latest",
        help="Run ID to re-aggregate (default: the latest run).",
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
    """Recompute summary.json and the reports of a run from its attempt records.

    Exits with the recomputed verdict's exit code.
    """
    check_output_format(output_format)
    try:
        config = build_config(project, root)
    except ConfigurationError as exc:
        config_error(exc)

    from qagate.engine.orchestrator import QAGateOrchestrator

    orchestrator = QAGateOrchestrator(config)
    try:
        summary = orchestrator.aggregate(run_id)
    except ArtifactStoreError as exc:
        infra_error(exc)
    except ConfigurationError as exc:
        config_error(exc)

    if output_format == "json":
        print_json(summary.to_dict())
    else:
        print_task_table(summary)
        print_summary_panel(summary)
        console.print(f"[dim]Rewrote reports in {orchestrator.store.run_dir(summary.run_id)}[/dim]\n")

    if summary.exit_code != 0:
        raise typer.Exit(code=summary.exit_code)
