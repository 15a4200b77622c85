"""Artifact Store — deterministic on-disk layout for run outputs.

Layout under the configured root::

    runs/<runId>/
        run.json                       # RunConfiguration manifest
        summary.json                   # RunSummary (canonical)
        summary.junit.xml
        report.html
        <suiteId>/<env>/<browser?>/    # one directory per task
            stdout.log, stderr.log, attempt-<n>.json, <raw artifacts>
    latest -> runs/<runId>             # symlink, or a LATEST marker file
    history/summary-<ts>.json          # last K summaries

Every write goes to a ``*.tmp`` sibling and is renamed into place.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Any

from qagate.engine.aggregator import RunSummary
from qagate.errors import ArtifactStoreError
from qagate.models import DEFAULT_HISTORY_LIMIT

if TYPE_CHECKING:
    from qagate.engine.results import TaskKey

logger = logging.getLogger("qagate.engine.artifact_store")

ATTEMPT_FILE_RE = re.compile(r"^attempt-(\d+)\.json$")
LATEST_LINK = "latest"
LATEST_MARKER = "LATEST"
MANIFEST_FILE = "run.json"
SUMMARY_FILE = "summary.json"
JUNIT_FILE = "summary.junit.xml"
HTML_FILE = "report.html"


def dump_json(obj: Any) -> str:
    """Canonical JSON text: sorted keys, two-space indent, trailing newline."""
    return json.dumps(obj, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


def attempt_number(path: Path) -> int | None:
    match = ATTEMPT_FILE_RE.match(path.name)
    return int(match.group(1)) if match else None


class ArtifactStore:
    """Filesystem layout for one artifact root."""

    def __init__(self, root: Path, history_limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self.root = Path(root)
        self.history_limit = history_limit

    # ── Paths ────────────────────────────────────────────────────────────

    @property
    def runs_dir(self) -> Path:
        return self.root / "runs"

    @property
    def history_dir(self) -> Path:
        return self.root / "history"

    @property
    def latest_path(self) -> Path:
        return self.root / LATEST_LINK

    def run_dir(self, run_id: str) -> Path:
        return self.runs_dir / run_id

    def task_dir(self, task_key: TaskKey) -> Path:
        path = self.run_dir(task_key.run_id) / task_key.suite_id / task_key.environment
        return path / task_key.browser if task_key.browser else path

    def summary_path(self, run_id: str) -> Path:
        return self.run_dir(run_id) / SUMMARY_FILE

    def manifest_path(self, run_id: str) -> Path:
        return self.run_dir(run_id) / MANIFEST_FILE

    # ── Task directories ─────────────────────────────────────────────────

    def reserve_task_dir(self, task_key: TaskKey, attempt: int = 1) -> Path:
        """Create the task's output directory, empty of stale artifacts.

        The first attempt starts from an empty directory. Later attempts
        keep the ``attempt-<n>.json`` records of earlier attempts and remove
        everything else.
        """
        path = self.task_dir(task_key)
        try:
            if path.exists():
                if attempt <= 1:
                    shutil.rmtree(path)
                else:
                    for entry in path.iterdir():
                        if attempt_number(entry) is not None and entry.is_file():
                            continue
                        if entry.is_dir() and not entry.is_symlink():
                            shutil.rmtree(entry)
                        else:
                            entry.unlink()
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ArtifactStoreError(f"Cannot reserve task directory {path}: {exc}") from exc
        logger.debug("Reserved %s (attempt %d)", path, attempt)
        return path

    def attempt_files(self, task_dir: Path) -> list[Path]:
        """Attempt records in a task directory, ordered by attempt number."""
        if not task_dir.is_dir():
            return []
        found = [(attempt_number(p), p) for p in task_dir.iterdir() if p.is_file()]
        return [p for n, p in sorted((n, p) for n, p in found if n is not None)]

    # ── Atomic writes ────────────────────────────────────────────────────

    def commit_file(self, path: Path, data: bytes | str) -> Path:
        """Write ``data`` to ``path`` via a tmp sibling and an atomic rename."""
        payload = data.encode("utf-8") if isinstance(data, str) else data
        tmp = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "wb") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, path)
        except OSError as exc:
            try:
                tmp.unlink(missing_ok=True)
            except OSError:
                pass
            raise ArtifactStoreError(f"Cannot write {path}: {exc}") from exc
        return path

    def commit_json(self, path: Path, obj: Any) -> Path:
        return self.commit_file(path, dump_json(obj))

    @staticmethod
    def read_json(path: Path) -> Any:
        try:
            with open(path, encoding="utf-8") as fh:
                return json.load(fh)
        except OSError as exc:
            raise ArtifactStoreError(f"Cannot read {path}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise ArtifactStoreError(f"Corrupt JSON in {path}: {exc}") from exc

    # ── Runs ─────────────────────────────────────────────────────────────

    def list_runs(self) -> list[str]:
        """Run ids present on disk, newest first."""
        if not self.runs_dir.is_dir():
            return []
        return sorted((p.name for p in self.runs_dir.iterdir() if p.is_dir()), reverse=True)

    def write_manifest(self, run_id: str, manifest: dict[str, Any]) -> Path:
        return self.commit_json(self.manifest_path(run_id), manifest)

    def read_manifest(self, run_id: str) -> dict[str, Any]:
        path = self.manifest_path(run_id)
        if not path.is_file():
            raise ArtifactStoreError(f"Run manifest not found: {path}")
        return self.read_json(path)

    def load_summary(self, run_id: str) -> RunSummary:
        return RunSummary.from_dict(self.read_json(self.summary_path(run_id)))

    # ── Latest pointer ───────────────────────────────────────────────────

    def publish_latest(self, run_id: str) -> bool:
        """Point ``latest`` at ``runs/<run_id>``. Returns False on failure.

        A symlink is created beside the final name and renamed over it; where
        symlinks are unavailable a ``LATEST`` marker file is written instead.
        Failures are logged and never raised: the run stays recoverable from
        its own directory.
        """
        target = Path("runs") / run_id
        tmp_link = self.root / f".{LATEST_LINK}.tmp"
        try:
            tmp_link.unlink(missing_ok=True)
            os.symlink(target, tmp_link, target_is_directory=True)
            os.replace(tmp_link, self.latest_path)
            logger.info("latest -> %s", target)
            return True
        except (OSError, NotImplementedError) as exc:
            logger.warning("Cannot publish latest symlink (%s); writing %s marker", exc, LATEST_MARKER)
            try:
                tmp_link.unlink(missing_ok=True)
            except OSError:
                pass
        try:
            self.commit_file(self.root / LATEST_MARKER, run_id + "\n")
            return True
        except ArtifactStoreError as exc:
            logger.error("Failed to publish latest pointer for %s: %s", run_id, exc)
            return False

    def resolve_latest(self) -> str | None:
        """Run id the latest pointer references, if any."""
        if self.latest_path.is_symlink():
            return Path(os.readlink(self.latest_path)).name
        marker = self.root / LATEST_MARKER
        if marker.is_file():
            return marker.read_text(encoding="utf-8").strip() or None
        return None

    def resolve_run_id(self, run_id: str) -> str:
        """Resolve ``latest`` to a concrete run id."""
        if run_id != LATEST_LINK:
            return run_id
        resolved = self.resolve_latest()
        if resolved is None:
            raise ArtifactStoreError(f"No latest run published under {self.root}")
        return resolved

    # ── History ──────────────────────────────────────────────────────────

    @staticmethod
    def history_name(started_at: str) -> str:
        stamp = re.sub(r"[^0-9]", "", started_at)
        return f"summary-{stamp}.json"

    def archive_summary(self, summary: RunSummary) -> Path:
        """Copy a summary into history and prune to the last K entries."""
        path = self.history_dir / self.history_name(summary.started_at)
        self.commit_json(path, summary.to_dict())
        self._prune_history()
        return path

    def _prune_history(self) -> None:
        entries = sorted(self.history_dir.glob("summary-*.json"))
        for stale in entries[: max(0, len(entries) - self.history_limit)]:
            try:
                stale.unlink()
                logger.debug("Pruned history entry %s", stale.name)
            except OSError as exc:
                logger.warning("Failed to prune %s: %s", stale, exc)

    def list_history(self, limit: int | None = None) -> list[RunSummary]:
        """Archived summaries, newest first. Unreadable entries are skipped."""
        if not self.history_dir.is_dir():
            return []
        summaries: list[RunSummary] = []
        for path in sorted(self.history_dir.glob("summary-*.json"), reverse=True):
            try:
                summaries.append(RunSummary.from_dict(self.read_json(path)))
            except (ArtifactStoreError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable history entry %s: %s", path.name, exc)
                continue
            if limit is not None and len(summaries) >= limit:
                break
        return summaries
