"""Exception taxonomy for qagate.

Timeouts and SLO violations are not exceptions: they are task states.
"""

from __future__ import annotations


class QAGateError(Exception):
    """Base class for all qagate errors."""

    pass


class ConfigurationError(QAGateError):
    """Raised when configuration or suite selection is invalid.

    Always raised before any task starts; no run directory is created.
    """

    pass


class SpawnError(QAGateError):
    """Raised when a child process cannot be started."""

    pass


class ParseFailure(QAGateError):
    """Raised when a result artifact is malformed beyond tolerance."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class ArtifactStoreError(QAGateError):
    """Raised on I/O failures inside the artifact store."""

    pass
