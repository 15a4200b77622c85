"""Latency Digest — bounded-memory percentile sketch.

Small distributions are kept exactly so nearest-rank percentiles are exact.
Once a digest holds more than ``exact_limit`` samples it collapses into
logarithmic buckets with a fixed relative accuracy (the DDSketch scheme):
a value ``v > 0`` falls into bucket ``ceil(log(v) / log(gamma))`` where
``gamma = (1 + a) / (1 - a)``, and every bucket is reported by a
representative within ``a`` relative error of all values it holds. Memory
is then proportional to the dynamic range of the data, not to the number
of samples.

Percentiles always use the nearest-rank definition:
``index = ceil(p / 100 * N) - 1`` clamped to ``[0, N - 1]``.
"""

from __future__ import annotations

import math
from typing import Any, Iterable

from qagate.models import DIGEST_EXACT_LIMIT, DIGEST_RELATIVE_ACCURACY


def nearest_rank_index(p: float, n: int) -> int:
    """Return the zero-based nearest-rank index of percentile ``p`` among ``n`` values."""
    if n <= 0:
        raise ValueError("nearest_rank_index requires at least one value")
    index = math.ceil(p / 100.0 * n) - 1
    return min(max(index, 0), n - 1)


class LatencyDigest:
    """Streaming percentile digest over non-negative latencies (milliseconds)."""

    def __init__(
        self,
        relative_accuracy: float = DIGEST_RELATIVE_ACCURACY,
        exact_limit: int = DIGEST_EXACT_LIMIT,
    ) -> None:
        if not 0 < relative_accuracy < 1:
            raise ValueError(f"relative_accuracy must be in (0, 1), got {relative_accuracy}")
        self.relative_accuracy = relative_accuracy
        self.exact_limit = exact_limit
        self._gamma = (1 + relative_accuracy) / (1 - relative_accuracy)
        self._log_gamma = math.log(self._gamma)
        self._exact: list[float] | None = []
        self._buckets: dict[int, int] = {}
        self._zero_count = 0
        self.count = 0
        self.total = 0.0
        self.min: float | None = None
        self.max: float | None = None

    # ── Ingestion ───────────────────────────────────────────────────────

    def add(self, value: float) -> None:
        value = float(value)
        if math.isnan(value) or math.isinf(value):
            raise ValueError(f"Latency must be finite, got {value}")
        value = max(value, 0.0)
        self.count += 1
        self.total += value
        self.min = value if self.min is None else min(self.min, value)
        self.max = value if self.max is None else max(self.max, value)
        if self._exact is not None:
            self._exact.append(value)
            if len(self._exact) > self.exact_limit:
                self._collapse()
        else:
            self._bucket_add(value, 1)

    def extend(self, values: Iterable[float]) -> None:
        for value in values:
            self.add(value)

    def merge(self, other: LatencyDigest) -> None:
        """Fold ``other`` into this digest (union of both distributions)."""
        if other.count == 0:
            return
        self.count += other.count
        self.total += other.total
        self.min = other.min if self.min is None else min(self.min, other.min)  # type: ignore[type-var]
        self.max = other.max if self.max is None else max(self.max, other.max)  # type: ignore[type-var]
        if self._exact is not None and other._exact is not None:
            self._exact.extend(other._exact)
            if len(self._exact) > self.exact_limit:
                self._collapse()
            return
        if self._exact is not None:
            self._collapse()
        if other._exact is not None:
            for value in other._exact:
                self._bucket_add(value, 1)
        else:
            self._zero_count += other._zero_count
            for key, cnt in other._buckets.items():
                self._buckets[key] = self._buckets.get(key, 0) + cnt

    def _collapse(self) -> None:
        exact = self._exact or []
        self._exact = None
        for value in exact:
            self._bucket_add(value, 1)

    def _bucket_add(self, value: float, cnt: int) -> None:
        if value <= 0.0:
            self._zero_count += cnt
            return
        key = math.ceil(math.log(value) / self._log_gamma)
        self._buckets[key] = self._buckets.get(key, 0) + cnt

    # ── Queries ─────────────────────────────────────────────────────────

    @property
    def is_exact(self) -> bool:
        return self._exact is not None

    @property
    def mean(self) -> float | None:
        return self.total / self.count if self.count else None

    def percentile(self, p: float) -> float | None:
        """Nearest-rank percentile, or None for an empty digest."""
        if self.count == 0:
            return None
        rank = nearest_rank_index(p, self.count)
        if self._exact is not None:
            # sorted() is stable; ties keep insertion order
            return sorted(self._exact)[rank]
        if rank < self._zero_count:
            return 0.0
        seen = self._zero_count
        for key in sorted(self._buckets):
            seen += self._buckets[key]
            if seen > rank:
                value = 2.0 * self._gamma**key / (self._gamma + 1.0)
                # Bucket representatives never escape the observed range
                return min(max(value, self.min or 0.0), self.max or value)
        return self.max

    # ── Serialization ───────────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "relativeAccuracy": self.relative_accuracy,
            "exactLimit": self.exact_limit,
            "count": self.count,
            "total": self.total,
            "min": self.min,
            "max": self.max,
        }
        if self._exact is not None:
            data["exact"] = sorted(self._exact)
        else:
            data["zeroCount"] = self._zero_count
            data["buckets"] = {str(k): v for k, v in sorted(self._buckets.items())}
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LatencyDigest:
        digest = cls(
            relative_accuracy=float(data.get("relativeAccuracy", DIGEST_RELATIVE_ACCURACY)),
            exact_limit=int(data.get("exactLimit", DIGEST_EXACT_LIMIT)),
        )
        digest.count = int(data.get("count", 0))
        digest.total = float(data.get("total", 0.0))
        digest.min = data.get("min")
        digest.max = data.get("max")
        if "exact" in data:
            digest._exact = [float(v) for v in data["exact"]]
        else:
            digest._exact = None
            digest._zero_count = int(data.get("zeroCount", 0))
            digest._buckets = {int(k): int(v) for k, v in data.get("buckets", {}).items()}
        return digest

    def __repr__(self) -> str:
        mode = "exact" if self.is_exact else f"{len(self._buckets)} buckets"
        return f"LatencyDigest(count={self.count}, {mode})"
