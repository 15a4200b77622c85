"""qagate CLI — Main Typer entry point.

Registers all subcommands and provides --version / --verbose global options.
"""

from __future__ import annotations

import typer
from rich.console import Console

from qagate import __version__

TAGLINE = "Run every QA layer, gate the build on its SLOs."

console = Console()

# ── Version callback ──────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"qagate v{__version__}", style="bold cyan")
        console.print(f"  {TAGLINE}", style="dim")
        raise typer.Exit()


# ── Main app ──────────────────────────────────────────────────────────────

app = typer.Typer(
    name="qagate",
    help=f"qagate: {TAGLINE}",
    rich_markup_mode="rich",
    no_args_is_help=True,
    add_completion=False,
)


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show qagate version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose output.",
    ),
) -> None:
    """qagate -- multi-layer QA execution and SLO gating.

    Browser, API, load, security and contract suites in one run, one verdict.
    """
    if verbose:
        import logging

        logging.basicConfig(level=logging.DEBUG, format="%(name)s  %(message)s")


# ── Register subcommands ──────────────────────────────────────────────────
# Each subcommand is a separate module to keep this file lean.

from qagate.cli.aggregate import aggregate  # noqa: E402
from qagate.cli.health_check import health_check  # noqa: E402
from qagate.cli.report import report  # noqa: E402
from qagate.cli.run import run  # noqa: E402
from qagate.cli.trend import trend  # noqa: E402
from qagate.cli.validate import validate  # noqa: E402

app.command(name="run", help="Run suites and exit with the SLO verdict.")(run)
app.command(name="aggregate", help="Rebuild a run's summary and reports from its artifacts.")(aggregate)
app.command(name="trend", help="Compare the latest run with earlier runs.")(trend)
app.command(name="health-check", help="Check tools, directories and endpoints without running tests.")(health_check)
app.command(name="validate", help="Validate suite YAML and config without executing anything.")(validate)
app.command(name="report", help="List runs or view a run's summary.")(report)
