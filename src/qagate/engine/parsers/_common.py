"""Helpers shared by the result parsers."""

from __future__ import annotations

import datetime as dt
import json
import re
from pathlib import Path
from typing import Any

from qagate.errors import ParseFailure
from qagate.models import MALFORMED_FRACTION_LIMIT


def is_blank(path: Path) -> bool:
    """True when the artifact has no content besides whitespace."""
    if path.stat().st_size == 0:
        return True
    with open(path, "rb") as fh:
        while chunk := fh.read(65536):
            if chunk.strip():
                return False
    return True


def load_json_document(path: Path) -> Any:
    """Load a whole-file JSON document; truncated or invalid JSON is a ParseFailure."""
    try:
        with open(path, encoding="utf-8-sig") as fh:
            return json.load(fh)
    except json.JSONDecodeError as exc:
        raise ParseFailure(f"Malformed JSON in {path.name}: {exc}", str(path)) from exc
    except UnicodeDecodeError as exc:
        raise ParseFailure(f"Artifact {path.name} is not UTF-8 text: {exc}", str(path)) from exc


def require_mapping(data: Any, path: Path, what: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ParseFailure(f"{what} in {path.name} must be a JSON object", str(path))
    return data


def as_int(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def as_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool) or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number


class MalformedRowCounter:
    """Counts rows and rejects the artifact when more than 10% are malformed."""

    def __init__(self, path: Path, limit: float = MALFORMED_FRACTION_LIMIT) -> None:
        self.path = path
        self.limit = limit
        self.rows = 0
        self.malformed = 0

    def ok(self) -> None:
        self.rows += 1

    def bad(self) -> None:
        self.rows += 1
        self.malformed += 1

    def check(self, warnings: set[str]) -> None:
        if not self.malformed:
            return
        warnings.add(f"malformed-rows: {self.malformed}")
        if self.malformed / self.rows > self.limit:
            raise ParseFailure(
                f"{self.malformed} of {self.rows} rows in {self.path.name} are malformed "
                f"(limit {self.limit:.0%})",
                str(self.path),
            )


_FRACTION_RE = re.compile(r"\.(\d+)")


def parse_timestamp_millis(value: Any) -> float | None:
    """Epoch milliseconds from a number or an RFC 3339 string (nanosecond precision allowed)."""
    number = as_number(value)
    if number is not None:
        return number
    if not isinstance(value, str) or not value:
        return None
    text = value.strip().replace("Z", "+00:00")
    # datetime only understands microseconds
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = dt.datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.timestamp() * 1000.0
