"""Process Executor — runs one external tool and reports how it ended.

The child runs in its own process group with stdout and stderr redirected
straight into files in the task's output directory, so nothing is buffered
in memory. On timeout or cancellation the whole group receives SIGTERM and,
after the grace window, SIGKILL.

The executor performs no result interpretation.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import signal
import subprocess
import threading
import time
from collections import deque
from pathlib import Path
from typing import Mapping

from qagate.errors import SpawnError
from qagate.models import DEFAULT_GRACE_SECONDS, EXIT_FATAL_DEFAULT, EXIT_TIMEOUT_SENTINEL

logger = logging.getLogger("qagate.engine.process_executor")

STDOUT_LOG = "stdout.log"
STDERR_LOG = "stderr.log"
_POLL_SECONDS = 0.05


@dataclasses.dataclass
class ExecutionRequest:
    """Everything needed to spawn one child."""

    program: str
    args: list[str]
    env: Mapping[str, str]
    output_dir: Path
    timeout_millis: int
    cwd: Path | None = None
    grace_seconds: float = DEFAULT_GRACE_SECONDS
    cancel_event: threading.Event | None = None


@dataclasses.dataclass
class ExecutionResult:
    """How the child ended."""

    exit_code: int
    wall_clock_millis: int
    stdout_path: Path
    stderr_path: Path
    timed_out: bool = False
    cancelled: bool = False


class ProcessExecutor:
    """Spawns children with a hard timeout and an explicit environment."""

    def __init__(self, poll_seconds: float = _POLL_SECONDS) -> None:
        self._poll_seconds = poll_seconds

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        request.output_dir.mkdir(parents=True, exist_ok=True)
        stdout_path = request.output_dir / STDOUT_LOG
        stderr_path = request.output_dir / STDERR_LOG
        argv = [request.program, *request.args]

        with open(stdout_path, "wb") as out, open(stderr_path, "wb") as err:
            start = time.monotonic()
            try:
                proc = subprocess.Popen(
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=out,
                    stderr=err,
                    env=dict(request.env),
                    cwd=str(request.cwd) if request.cwd else None,
                    start_new_session=True,
                )
            except OSError as exc:
                raise SpawnError(f"Failed to start {request.program!r}: {exc}") from exc

            logger.debug("Spawned pid %d: %s", proc.pid, " ".join(argv))
            timed_out, cancelled = self._wait(proc, request, start)
            wall_clock = int(round((time.monotonic() - start) * 1000))

        returncode = proc.returncode
        if timed_out:
            exit_code = EXIT_TIMEOUT_SENTINEL
        elif returncode is None or returncode < 0:
            exit_code = EXIT_FATAL_DEFAULT
        else:
            exit_code = returncode

        logger.debug(
            "pid %d ended: returncode=%s exit_code=%d timed_out=%s cancelled=%s (%d ms)",
            proc.pid,
            returncode,
            exit_code,
            timed_out,
            cancelled,
            wall_clock,
        )
        return ExecutionResult(
            exit_code=exit_code,
            wall_clock_millis=wall_clock,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
            timed_out=timed_out,
            cancelled=cancelled,
        )

    def _wait(self, proc: subprocess.Popen, request: ExecutionRequest, start: float) -> tuple[bool, bool]:
        """Block until the child exits, is timed out, or is cancelled."""
        deadline = start + request.timeout_millis / 1000.0
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("pid %d exceeded %d ms; terminating", proc.pid, request.timeout_millis)
                self._terminate(proc, request.grace_seconds)
                return True, False
            if request.cancel_event is not None and request.cancel_event.is_set():
                logger.info("pid %d cancelled; terminating", proc.pid)
                self._terminate(proc, request.grace_seconds)
                return False, True
            try:
                proc.wait(timeout=min(self._poll_seconds, remaining))
                return False, False
            except subprocess.TimeoutExpired:
                continue

    @staticmethod
    def _signal_group(proc: subprocess.Popen, sig: int) -> None:
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except (ProcessLookupError, PermissionError):
            pass

    def _terminate(self, proc: subprocess.Popen, grace_seconds: float) -> None:
        """SIGTERM the process group, then SIGKILL after the grace window."""
        self._signal_group(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=grace_seconds)
            return
        except subprocess.TimeoutExpired:
            logger.warning("pid %d ignored SIGTERM for %.1fs; killing", proc.pid, grace_seconds)
        self._signal_group(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
        proc.wait()


def tail_lines(path: Path, n: int) -> list[str]:
    """Last ``n`` lines of a log file, for the task's bounded log ring."""
    if n <= 0 or not path.is_file():
        return []
    with open(path, encoding="utf-8", errors="replace") as fh:
        return [line.rstrip("\n") for line in deque(fh, maxlen=n)]
