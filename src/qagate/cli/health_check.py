"""qagate health-check — Preflight the environment without running any suite.

Checks, in order:

1. the project directory and suite catalog
2. every suite's program resolves on PATH
3. the artifact root is writable
4. the CI platform (informational)
5. ``BASE_URL`` / ``API_BASE_URL`` answer (warning only)
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Mapping

import requests
import typer
from rich.panel import Panel

from qagate.cli._common import (
    build_config,
    check_output_format,
    config_error,
    console,
    output_console,
    print_json,
)
from qagate.config import QAGateConfig
from qagate.engine.suites import load_suite_catalog, suite_files, validate_suite_file
from qagate.errors import ConfigurationError

logger = logging.getLogger("qagate.cli.health_check")

CI_PLATFORMS = (
    ("GITHUB_ACTIONS", "GitHub Actions"),
    ("GITLAB_CI", "GitLab CI"),
    ("JENKINS_URL", "Jenkins"),
    ("BUILDKITE", "Buildkite"),
    ("CIRCLECI", "CircleCI"),
)

URL_VARS = ("BASE_URL", "API_BASE_URL")

_STATUS_STYLE = {
    "ok": "[green]✓[/green]",
    "warning": "[yellow]![/yellow]",
    "error": "[red]✗[/red]",
    "info": "[dim]·[/dim]",
}


def detect_ci(environ: Mapping[str, str]) -> str | None:
    for var, name in CI_PLATFORMS:
        if environ.get(var):
            return name
    if environ.get("CI", "").lower() in ("1", "true", "yes"):
        return "generic CI"
    return None


def _check(name: str, status: str, message: str) -> dict[str, Any]:
    return {"check": name, "status": status, "message": message}


def _check_url(var: str, url: str, timeout: float = 5.0) -> dict[str, Any]:
    logger.debug("Probing %s=%s", var, url)
    try:
        resp = requests.get(url, timeout=timeout)
    except requests.RequestException as exc:
        return _check(var, "warning", f"{url} unreachable: {exc}")
    if resp.status_code >= 500:
        return _check(var, "warning", f"{url} returned {resp.status_code}")
    return _check(var, "ok", f"{url} returned {resp.status_code}")


def _check_writable(root: Path) -> dict[str, Any]:
    try:
        root.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=root, prefix=".health-", delete=True):
            pass
    except OSError as exc:
        return _check("artifact_root", "error", f"{root} is not writable: {exc}")
    return _check("artifact_root", "ok", f"{root} is writable")


def run_checks(config: QAGateConfig, environ: Mapping[str, str] | None = None) -> list[dict[str, Any]]:
    """Run every preflight check and return the results in order."""
    env = os.environ if environ is None else environ
    results: list[dict[str, Any]] = []

    if config.project_dir.is_dir():
        results.append(_check("project_dir", "ok", str(config.project_dir)))
    else:
        results.append(_check("project_dir", "error", f"{config.project_dir} does not exist"))

    files = suite_files(config.suites_dir)
    invalid = [p for p in files if any(i["severity"] == "error" for i in validate_suite_file(p))]
    catalog: dict = {}
    if not files:
        results.append(_check("suites", "error", f"No suite definitions in {config.suites_dir}"))
    elif invalid:
        names = ", ".join(p.name for p in invalid)
        results.append(_check("suites", "error", f"Invalid suite file(s): {names}. Run qagate validate"))
    else:
        try:
            catalog = load_suite_catalog(config.suites_dir)
            results.append(_check("suites", "ok", f"{len(catalog)} suite(s) in {config.suites_dir}"))
        except ConfigurationError as exc:
            results.append(_check("suites", "error", str(exc)))

    for suite_id, suite in sorted(catalog.items()):
        program = suite.program
        if "{{" in program:
            results.append(_check(f"tool:{suite_id}", "info", f"{program} is templated; not checked"))
        elif shutil.which(program) is None:
            results.append(_check(f"tool:{suite_id}", "error", f"{program} not found on PATH"))
        else:
            results.append(_check(f"tool:{suite_id}", "ok", shutil.which(program) or program))

    results.append(_check_writable(config.artifact_root))

    ci = detect_ci(env)
    results.append(_check("ci", "info", f"running under {ci}" if ci else "not running under CI"))

    for var in URL_VARS:
        url = env.get(var)
        if url:
            results.append(_check_url(var, url))
    return results


def health_check(
    project: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Project directory (.qagate/) or its config.yaml.",
    ),
    root: Path | None = typer.Option(
        None,
        "--root",
        help="Artifact store root. Default: ARTIFACT_ROOT, then .qagate/artifacts.",
    ),
    output_format: str = typer.Option(
        "text",
        "--output",
        "-o",
        help="Output format: text or json.",
    ),
) -> None:
    """Check tools, directories, suite definitions and endpoints. Never runs tests.

    Exits 1 when any check reports an error; unreachable URLs are warnings.
    """
    check_output_format(output_format)
    try:
        config = build_config(project, root)
    except ConfigurationError as exc:
        config_error(exc)

    results = run_checks(config)
    errors = [r for r in results if r["status"] == "error"]
    warnings = [r for r in results if r["status"] == "warning"]

    if output_format == "json":
        print_json({"healthy": not errors, "checks": results})
    else:
        for r in results:
            output_console.print(f"  {_STATUS_STYLE[r['status']]} [bold]{r['check']}[/bold]  {r['message']}")
        console.print()
        if errors:
            console.print(
                Panel(
                    f"[bold red]Health check failed.[/bold red]  {len(errors)} error(s), {len(warnings)} warning(s)",
                    border_style="red",
                )
            )
        elif warnings:
            console.print(Panel(f"[yellow]Healthy with {len(warnings)} warning(s).[/yellow]", border_style="yellow"))
        else:
            console.print(Panel("[bold green]All checks passed.[/bold green]", border_style="green"))

    if errors:
        raise typer.Exit(code=1)
