"""Result Parser Registry — maps a suite kind to the parser for its tool family.

Each parser is a pure function ``(artifact_path, task_key) -> NormalizedResult``
that raises :class:`~qagate.errors.ParseFailure` when the artifact is
malformed beyond tolerance. The registry owns the cross-cutting rules:

- a blank artifact yields ``{cases: 0, errored: 1}`` with warning ``empty-output``
- several artifacts for one task are parsed individually and merged
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Iterable

from qagate.engine.parsers._common import is_blank
from qagate.engine.parsers.browser import parse_browser_report
from qagate.engine.parsers.contract import parse_contract_verification
from qagate.engine.parsers.http_collection import parse_http_collection
from qagate.engine.parsers.load import parse_load_csv, parse_load_stream
from qagate.engine.parsers.scanner import parse_scanner_report
from qagate.engine.results import NormalizedResult, TaskKey, merge_results
from qagate.errors import ParseFailure

logger = logging.getLogger("qagate.engine.parsers")

Parser = Callable[[Path, TaskKey], NormalizedResult]


class ParserRegistry:
    """Lookup table of parsers keyed by suite kind."""

    def __init__(self) -> None:
        self._parsers: dict[str, Parser] = {}

    @classmethod
    def default(cls) -> ParserRegistry:
        registry = cls()
        registry.register("browser", parse_browser_report)
        registry.register("http-collection", parse_http_collection)
        registry.register("load-stream", parse_load_stream)
        registry.register("load-csv", parse_load_csv)
        registry.register("scanner", parse_scanner_report)
        registry.register("contract", parse_contract_verification)
        return registry

    def register(self, kind: str, parser: Parser) -> None:
        self._parsers[kind] = parser

    def kinds(self) -> list[str]:
        return sorted(self._parsers)

    def get(self, kind: str) -> Parser:
        try:
            return self._parsers[kind]
        except KeyError:
            raise ParseFailure(f"No parser registered for suite kind '{kind}'") from None

    def parse(self, kind: str, paths: Iterable[Path], task_key: TaskKey) -> NormalizedResult:
        """Parse every artifact of a task and merge them into one result."""
        parser = self.get(kind)
        results: list[NormalizedResult] = []
        for path in sorted(paths):
            try:
                if is_blank(path):
                    logger.info("Artifact %s is empty", path)
                    results.append(NormalizedResult.empty(task_key))
                    continue
                results.append(parser(path, task_key))
            except OSError as exc:
                raise ParseFailure(f"Cannot read artifact {path}: {exc}", str(path)) from exc
        if not results:
            return NormalizedResult.empty(task_key)
        if len(results) == 1:
            return results[0]
        # One usable artifact is enough: drop the placeholders left by empty siblings
        usable = [r for r in results if not r.is_empty_output]
        if not usable:
            return NormalizedResult.empty(task_key)
        merged = merge_results(task_key, usable)
        if len(usable) < len(results):
            merged.warnings.add("empty-artifact-ignored")
        return merged


__all__ = [
    "Parser",
    "ParserRegistry",
    "parse_browser_report",
    "parse_contract_verification",
    "parse_http_collection",
    "parse_load_csv",
    "parse_load_stream",
    "parse_scanner_report",
]
