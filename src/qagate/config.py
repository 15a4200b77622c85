"""qagate configuration management."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from qagate.engine.slo import SLOPolicy
from qagate.errors import ConfigurationError
from qagate.models import (
    DEFAULT_GRACE_SECONDS,
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_LOG_TAIL_LINES,
    DEFAULT_MAX_WORKERS,
    DEFAULT_NOISE_FLOORS,
    DEFAULT_TREND_WINDOW,
    ENVIRONMENTS,
)

PROJECT_DIR_NAME = ".qagate"

_NOISE_FLOOR_ENV = {
    "NOISE_FLOOR_PASS_RATE": "passRate",
    "NOISE_FLOOR_DURATION": "duration",
    "NOISE_FLOOR_P95": "p95",
    "NOISE_FLOOR_ERROR_RATE": "errorRate",
}


def default_max_workers() -> int:
    """Global concurrency bound: min(cores, 4)."""
    return max(1, min(os.cpu_count() or 1, DEFAULT_MAX_WORKERS))


@dataclass
class QAGateConfig:
    """Configuration for a qagate invocation."""

    # Paths
    project_dir: Path = field(default_factory=lambda: Path(PROJECT_DIR_NAME))
    suites_dir: Path = field(default_factory=lambda: Path(PROJECT_DIR_NAME) / "suites")
    artifact_root: Path = field(default_factory=lambda: Path(PROJECT_DIR_NAME) / "artifacts")

    # Behavior
    default_environment: str = "development"
    max_workers: int = field(default_factory=default_max_workers)
    grace_seconds: float = DEFAULT_GRACE_SECONDS
    history_limit: int = DEFAULT_HISTORY_LIMIT
    trend_window: int = DEFAULT_TREND_WINDOW
    log_tail_lines: int = DEFAULT_LOG_TAIL_LINES

    # Thresholds
    slo: SLOPolicy = field(default_factory=SLOPolicy)
    noise_floors: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_NOISE_FLOORS))

    @classmethod
    def from_file(cls, config_path: Path) -> QAGateConfig:
        """Load config from a YAML file."""
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}\n\nTo fix: create {config_path}")
        try:
            with open(config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Config file is not valid YAML: {config_path}\n\n{exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file must be a YAML mapping: {config_path}")
        return cls._from_dict(data, config_path.parent)

    @classmethod
    def _from_dict(cls, data: dict[str, Any], project_dir: Path) -> QAGateConfig:
        """Create config from a dictionary."""
        config = cls()
        config.project_dir = project_dir
        config.suites_dir = project_dir / data.get("suites_dir", "suites")
        config.artifact_root = project_dir / data.get("artifact_root", "artifacts")

        try:
            if "default_environment" in data:
                config.default_environment = str(data["default_environment"])
            if "max_workers" in data:
                config.max_workers = int(data["max_workers"])
            if "grace_seconds" in data:
                config.grace_seconds = float(data["grace_seconds"])
            if "history_limit" in data:
                config.history_limit = int(data["history_limit"])
            if "trend_window" in data:
                config.trend_window = int(data["trend_window"])
            if "log_tail_lines" in data:
                config.log_tail_lines = int(data["log_tail_lines"])
            if isinstance(data.get("noise_floors"), dict):
                for key, value in data["noise_floors"].items():
                    config.noise_floors[str(key)] = float(value)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid value in config: {exc}") from exc

        if "slo" in data:
            config.slo = SLOPolicy.from_dict(data["slo"] or {})

        config.validate()
        return config

    def apply_env(self, environ: Mapping[str, str] | None = None) -> QAGateConfig:
        """Apply environment variable overrides (TEST_ENV, ARTIFACT_ROOT, NOISE_FLOOR_*)."""
        env = os.environ if environ is None else environ
        if test_env := env.get("TEST_ENV"):
            self.default_environment = test_env
        if artifact_root := env.get("ARTIFACT_ROOT"):
            self.artifact_root = Path(artifact_root)
        for var, metric in _NOISE_FLOOR_ENV.items():
            raw = env.get(var)
            if raw is None or raw == "":
                continue
            try:
                self.noise_floors[metric] = float(raw)
            except ValueError as exc:
                raise ConfigurationError(f"{var} must be a number, got: {raw!r}") from exc
        self.validate()
        return self

    def validate(self) -> None:
        if self.default_environment not in ENVIRONMENTS and self.default_environment != "all":
            raise ConfigurationError(
                f"Unknown environment: {self.default_environment}\n\n"
                f"Valid environments: {', '.join(ENVIRONMENTS)}, all"
            )
        if self.max_workers < 1:
            raise ConfigurationError(f"max_workers must be >= 1, got: {self.max_workers}")
        if self.grace_seconds < 0:
            raise ConfigurationError(f"grace_seconds must be >= 0, got: {self.grace_seconds}")
        if self.history_limit < 1 or self.trend_window < 1:
            raise ConfigurationError("history_limit and trend_window must be >= 1")


def find_project_dir(start: Path | None = None) -> Path:
    """Find the .qagate/ project directory, searching upward from cwd."""
    current = start or Path.cwd()
    for base in [current, *current.parents]:
        candidate = base / PROJECT_DIR_NAME
        if candidate.is_dir():
            return candidate
    return current / PROJECT_DIR_NAME


def load_config(project_dir: Path | None = None, environ: Mapping[str, str] | None = None) -> QAGateConfig:
    """Resolve config from the project directory and the environment."""
    project_dir = project_dir or find_project_dir()
    config_path = project_dir / "config.yaml"
    if config_path.is_file():
        config = QAGateConfig.from_file(config_path)
    else:
        config = QAGateConfig._from_dict({}, project_dir)
    return config.apply_env(environ)
