"""Suite Catalog — loads, validates and freezes SuiteDefinitions.

Suites live as YAML files under the project's ``suites/`` directory. A file
holds one suite (``suite: {...}``) or several (``suites: [...]``)::

    suite:
      id: checkout-ui
      kind: browser
      display_name: Checkout UI
      command: ["npx", "playwright", "test", "--project={{browser}}", "--reporter=json"]
      environments: [development, staging]
      browsers: [chromium, firefox, webkit]
      timeout_ms: 300000
      max_attempts: 2
      parallel: true
      artifacts: ["results.json"]
      env:
        PLAYWRIGHT_JSON_OUTPUT_NAME: "{{output_dir}}/results.json"
      slo:
        p95: 1000
        p99: 2000
        error_rate: 0.01
"""

from __future__ import annotations

import dataclasses
import logging
import shlex
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft7Validator

from qagate.engine.slo import SLOPolicy
from qagate.errors import ConfigurationError
from qagate.models import BROWSERS, ENVIRONMENTS, SUITE_KINDS

logger = logging.getLogger("qagate.engine.suites")

_THRESHOLD = {"type": ["number", "null"], "minimum": 0}

SLO_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "p95": _THRESHOLD,
        "p99": _THRESHOLD,
        "error_rate": {"type": ["number", "null"], "minimum": 0, "maximum": 1},
        "min_cases": {"type": ["integer", "null"], "minimum": 0},
        "labels": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "p95": _THRESHOLD,
                    "p99": _THRESHOLD,
                    "error_rate": {"type": ["number", "null"], "minimum": 0, "maximum": 1},
                },
                "additionalProperties": False,
            },
        },
    },
    "additionalProperties": False,
}

SUITE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id", "kind", "command", "environments", "artifacts"],
    "properties": {
        "id": {"type": "string", "pattern": "^[A-Za-z0-9][A-Za-z0-9_.-]*$"},
        "kind": {"enum": list(SUITE_KINDS)},
        "display_name": {"type": "string"},
        "description": {"type": "string"},
        "command": {
            "oneOf": [
                {"type": "string", "minLength": 1},
                {"type": "array", "items": {"type": "string"}, "minItems": 1},
            ]
        },
        "environments": {
            "type": "array",
            "items": {"enum": list(ENVIRONMENTS)},
            "minItems": 1,
            "uniqueItems": True,
        },
        "browsers": {"type": "array", "items": {"enum": list(BROWSERS)}, "uniqueItems": True},
        "timeout_ms": {"type": "integer", "minimum": 1},
        "max_attempts": {"type": "integer", "minimum": 1},
        "parallel": {"type": "boolean"},
        "artifacts": {"type": "array", "items": {"type": "string", "minLength": 1}, "minItems": 1},
        "env": {"type": "object", "additionalProperties": {"type": ["string", "number", "boolean"]}},
        "slo": SLO_SCHEMA,
    },
    "additionalProperties": False,
}

DEFAULT_TIMEOUT_MS = 300_000


@dataclasses.dataclass(frozen=True)
class SuiteDefinition:
    """Immutable description of a runnable suite."""

    id: str
    kind: str
    display_name: str
    command: tuple[str, ...]
    environment_allow_list: frozenset[str]
    browser_allow_list: frozenset[str] = frozenset()
    timeout_millis: int = DEFAULT_TIMEOUT_MS
    max_attempts: int = 1
    parallel_within_suite: bool = False
    artifact_globs: tuple[str, ...] = ()
    env: tuple[tuple[str, str], ...] = ()
    slo: SLOPolicy | None = None
    description: str = ""

    @property
    def program(self) -> str:
        return self.command[0]

    @property
    def is_browser_suite(self) -> bool:
        return self.kind == "browser"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SuiteDefinition:
        """Build a definition from an already schema-validated mapping."""
        command = data["command"]
        if isinstance(command, str):
            command = shlex.split(command)
        return cls(
            id=data["id"],
            kind=data["kind"],
            display_name=data.get("display_name") or data["id"],
            command=tuple(command),
            environment_allow_list=frozenset(data["environments"]),
            browser_allow_list=frozenset(data.get("browsers") or ()),
            timeout_millis=int(data.get("timeout_ms", DEFAULT_TIMEOUT_MS)),
            max_attempts=int(data.get("max_attempts", 1)),
            parallel_within_suite=bool(data.get("parallel", False)),
            artifact_globs=tuple(data["artifacts"]),
            env=tuple(sorted((str(k), str(v)) for k, v in (data.get("env") or {}).items())),
            slo=SLOPolicy.from_dict(data["slo"]) if data.get("slo") else None,
            description=data.get("description", ""),
        )


def suite_entries(data: Any) -> list[Any] | None:
    if not isinstance(data, dict):
        return None
    if "suites" in data:
        return data["suites"] if isinstance(data["suites"], list) else None
    if "suite" in data:
        return [data["suite"]]
    return [data]


def validate_suite_file(path: Path) -> list[dict[str, Any]]:
    """Validate a suite YAML file. Returns a list of issue dicts."""
    issues: list[dict[str, Any]] = []
    try:
        with open(path, encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError) as exc:
        return [{"severity": "error", "field": "yaml_syntax", "message": f"YAML parse error: {exc}"}]

    entries = suite_entries(data)
    if entries is None:
        return [{"severity": "error", "field": "root", "message": "Suite file must be a mapping with 'suite' or 'suites'"}]

    validator = Draft7Validator(SUITE_SCHEMA)
    for index, entry in enumerate(entries):
        prefix = f"suites[{index}]" if len(entries) > 1 else "suite"
        for err in sorted(validator.iter_errors(entry), key=lambda e: list(e.path)):
            loc = ".".join(str(p) for p in err.path) if err.path else "root"
            issues.append({"severity": "error", "field": f"{prefix}.{loc}", "message": err.message})
        if not isinstance(entry, dict):
            continue
        if entry.get("kind") == "browser" and not entry.get("browsers"):
            issues.append(
                {
                    "severity": "warning",
                    "field": f"{prefix}.browsers",
                    "message": "Browser suite has no browsers; it will run once without a browser",
                }
            )
        if entry.get("kind") != "browser" and entry.get("browsers"):
            issues.append(
                {
                    "severity": "warning",
                    "field": f"{prefix}.browsers",
                    "message": f"browsers are ignored for kind '{entry.get('kind')}'",
                }
            )
    return issues


def load_suite_file(path: Path) -> list[SuiteDefinition]:
    errors = [i for i in validate_suite_file(path) if i["severity"] == "error"]
    if errors:
        detail = "\n".join(f"  {i['field']}: {i['message']}" for i in errors)
        raise ConfigurationError(f"Invalid suite definition in {path}:\n{detail}\n\nTo fix: qagate validate")
    with open(path, encoding="utf-8") as fh:
        entries = suite_entries(yaml.safe_load(fh)) or []
    return [SuiteDefinition.from_dict(entry) for entry in entries]


def suite_files(suites_dir: Path) -> list[Path]:
    if not suites_dir.is_dir():
        return []
    return sorted([*suites_dir.glob("*.yaml"), *suites_dir.glob("*.yml")])


def load_suite_catalog(suites_dir: Path) -> dict[str, SuiteDefinition]:
    """Load and freeze every suite under ``suites_dir``, keyed by id."""
    files = suite_files(suites_dir)
    if not files:
        raise ConfigurationError(
            f"No suite definitions found in {suites_dir}\n\nTo fix: add a <suite>.yaml file to {suites_dir}"
        )
    catalog: dict[str, SuiteDefinition] = {}
    for path in files:
        for suite in load_suite_file(path):
            if suite.id in catalog:
                raise ConfigurationError(f"Duplicate suite id '{suite.id}' in {path}")
            catalog[suite.id] = suite
    logger.info("Loaded %d suite(s) from %s", len(catalog), suites_dir)
    return catalog
