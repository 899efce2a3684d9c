"""
Thread-safe online metric aggregation.

Virtual users emit immutable :class:`Sample` records; the
:class:`Aggregator` folds them into running statistics per metric name
without keeping the raw samples.  Latency percentiles come from a
logarithmically bucketed histogram, so memory grows with the number of
distinct buckets (a few hundred for realistic latencies) instead of with
the number of requests.

Metric kinds follow the k6 model:

- **counter**: cumulative sum (``http_reqs``, ``iterations``)
- **gauge**: last value plus min/max (``vus``)
- **rate**: share of non-zero samples (``http_req_failed``, ``checks``)
- **trend**: distribution with percentiles (``http_req_duration``)

Key Concepts Demonstrated:
- Narrow per-series critical sections so recorders never wait on each other
  for more than one update
- Point-in-time immutable snapshots; two snapshots with no record in
  between compare equal
- Percentiles clamped to the observed ``[min, max]`` range
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loadgate.errors import AggregatorError, ConfigurationError

# Values whose magnitude is below this are folded into the zero bucket.
_MIN_INDEXABLE = 1e-9


class MetricKind(str, Enum):
    COUNTER = "counter"
    GAUGE = "gauge"
    RATE = "rate"
    TREND = "trend"


@dataclass(frozen=True)
class Sample:
    """
    One observation emitted by a virtual user.

    Attributes:
        metric: Metric name, e.g. ``"http_req_duration"``.
        value: Observed value; durations are milliseconds.
        timestamp: ``time.monotonic()`` at emission.
        tags: String tags (``name``, ``method``, ``status`` ...).
    """

    metric: str
    value: float
    timestamp: float = field(default_factory=time.monotonic)
    tags: Mapping[str, str] = field(default_factory=dict)


def metric_key(name: str, tags: Mapping[str, str] | None = None) -> str:
    """Canonical key for a metric or tag-filtered sub-metric: ``name{a:1,b:2}``."""
    if not tags:
        return name
    inner = ",".join(f"{key}:{tags[key]}" for key in sorted(tags))
    return f"{name}{{{inner}}}"


@dataclass(frozen=True)
class HistogramState:
    """Frozen copy of a :class:`LogHistogram` that answers quantile queries."""

    gamma: float
    zero_count: int = 0
    positive: tuple[tuple[int, int], ...] = ()
    negative: tuple[tuple[int, int], ...] = ()

    @property
    def count(self) -> int:
        return (
            self.zero_count
            + sum(n for _, n in self.positive)
            + sum(n for _, n in self.negative)
        )

    def _representative(self, index: int) -> float:
        # Midpoint (in relative terms) of (gamma^(i-1), gamma^i].
        return 2.0 * self.gamma**index / (self.gamma + 1.0)

    def quantile(self, q: float) -> float | None:
        """
        Nearest-rank quantile for ``q`` in ``[0, 1]``; ``None`` when empty.
        """
        total = self.count
        if total == 0:
            return None
        q = min(max(q, 0.0), 1.0)
        rank = max(1, math.ceil(q * total))
        seen = 0
        # Most negative first: larger |v| means smaller v.
        for index, n in sorted(self.negative, reverse=True):
            seen += n
            if seen >= rank:
                return -self._representative(index)
        seen += self.zero_count
        if seen >= rank:
            return 0.0
        for index, n in self.positive:
            seen += n
            if seen >= rank:
                return self._representative(index)
        return self._representative(self.positive[-1][0]) if self.positive else 0.0


class LogHistogram:
    """
    Logarithmic-bucket histogram with bounded relative error.

    A value ``v`` lands in bucket ``ceil(log_gamma(|v|))`` where
    ``gamma = (1 + a) / (1 - a)``; reporting the bucket's midpoint keeps
    the relative error of any quantile within ``a``.

    Not thread-safe on its own; :class:`MetricSeries` guards it.
    """

    def __init__(self, relative_accuracy: float = 0.01):
        if not 0 < relative_accuracy < 1:
            raise ConfigurationError("relative_accuracy must be between 0 and 1")
        self.relative_accuracy = relative_accuracy
        self.gamma = (1 + relative_accuracy) / (1 - relative_accuracy)
        self._log_gamma = math.log(self.gamma)
        self._positive: dict[int, int] = {}
        self._negative: dict[int, int] = {}
        self._zero_count = 0

    def _index(self, magnitude: float) -> int:
        return math.ceil(math.log(magnitude) / self._log_gamma)

    def add(self, value: float) -> None:
        if abs(value) < _MIN_INDEXABLE:
            self._zero_count += 1
        elif value > 0:
            index = self._index(value)
            self._positive[index] = self._positive.get(index, 0) + 1
        else:
            index = self._index(-value)
            self._negative[index] = self._negative.get(index, 0) + 1

    @property
    def bucket_count(self) -> int:
        return len(self._positive) + len(self._negative) + (1 if self._zero_count else 0)

    def freeze(self) -> HistogramState:
        return HistogramState(
            gamma=self.gamma,
            zero_count=self._zero_count,
            positive=tuple(sorted(self._positive.items())),
            negative=tuple(sorted(self._negative.items())),
        )


@dataclass(frozen=True)
class SeriesSnapshot:
    """
    Immutable point-in-time view of one metric (or sub-metric).

    ``nonzero`` is the number of samples with a non-zero value and is what
    rate metrics are made of: ``rate == nonzero / count`` is derived here,
    never maintained as a running average.
    """

    name: str
    kind: MetricKind
    tags: tuple[tuple[str, str], ...] = ()
    count: int = 0
    total: float = 0.0
    minimum: float | None = None
    maximum: float | None = None
    last: float | None = None
    nonzero: int = 0
    histogram: HistogramState | None = None

    @property
    def key(self) -> str:
        return metric_key(self.name, dict(self.tags))

    @property
    def is_empty(self) -> bool:
        return self.count == 0

    @property
    def avg(self) -> float | None:
        return self.total / self.count if self.count else None

    @property
    def rate(self) -> float | None:
        return self.nonzero / self.count if self.count else None

    @property
    def passes(self) -> int:
        return self.nonzero

    @property
    def fails(self) -> int:
        return self.count - self.nonzero

    def percentile(self, pct: float) -> float | None:
        """Approximate ``pct``-th percentile, clamped to ``[min, max]``."""
        if self.histogram is None or self.count == 0:
            return None
        estimate = self.histogram.quantile(pct / 100.0)
        if estimate is None:
            return None
        return min(max(estimate, self.minimum), self.maximum)

    @property
    def med(self) -> float | None:
        return self.percentile(50)

    def aggregate(self, aggregation: str) -> float | None:
        """
        Resolve a threshold aggregation (``"p(95)"``, ``"avg"``, ``"rate"`` ...).

        Returns ``None`` when the metric has no samples.
        """
        if self.count == 0:
            return None
        if aggregation.startswith("p(") and aggregation.endswith(")"):
            return self.percentile(float(aggregation[2:-1]))
        if aggregation == "count":
            return float(self.total if self.kind is MetricKind.COUNTER else self.count)
        if aggregation == "value":
            return self.last
        resolvers = {
            "avg": lambda: self.avg,
            "min": lambda: self.minimum,
            "max": lambda: self.maximum,
            "med": lambda: self.med,
            "rate": lambda: self.rate,
        }
        try:
            return resolvers[aggregation]()
        except KeyError:
            raise ConfigurationError(f"Unknown aggregation: {aggregation!r}") from None

    def to_dict(self) -> dict[str, Any]:
        """Summary values appropriate to the metric kind."""
        data: dict[str, Any] = {"kind": self.kind.value, "count": self.count}
        if self.kind is MetricKind.COUNTER:
            data["value"] = self.total
        elif self.kind is MetricKind.GAUGE:
            data.update(value=self.last, min=self.minimum, max=self.maximum)
        elif self.kind is MetricKind.RATE:
            data.update(rate=self.rate, passes=self.passes, fails=self.fails)
        else:
            data.update(
                avg=self.avg,
                min=self.minimum,
                med=self.med,
                max=self.maximum,
                **{f"p({p})": self.percentile(p) for p in (90, 95, 99)},
            )
        return data


class MetricSeries:
    """Mutable running statistics for one metric key, guarded by its own lock."""

    def __init__(
        self,
        name: str,
        kind: MetricKind,
        tags: Mapping[str, str] | None = None,
        relative_accuracy: float = 0.01,
    ):
        self.name = name
        self.kind = kind
        self.tags: dict[str, str] = dict(tags or {})
        self._lock = threading.Lock()
        self._count = 0
        self._total = 0.0
        self._min: float | None = None
        self._max: float | None = None
        self._last: float | None = None
        self._nonzero = 0
        self._histogram = LogHistogram(relative_accuracy) if kind is MetricKind.TREND else None

    def matches(self, tags: Mapping[str, str]) -> bool:
        return all(tags.get(key) == value for key, value in self.tags.items())

    def add(self, value: float) -> None:
        value = float(value)
        with self._lock:
            self._count += 1
            self._total += value
            self._last = value
            if self._min is None or value < self._min:
                self._min = value
            if self._max is None or value > self._max:
                self._max = value
            if value != 0:
                self._nonzero += 1
            if self._histogram is not None:
                self._histogram.add(value)

    def snapshot(self) -> SeriesSnapshot:
        with self._lock:
            histogram = self._histogram.freeze() if self._histogram is not None else None
            snapshot = SeriesSnapshot(
                name=self.name,
                kind=self.kind,
                tags=tuple(sorted(self.tags.items())),
                count=self._count,
                total=self._total,
                minimum=self._min,
                maximum=self._max,
                last=self._last,
                nonzero=self._nonzero,
                histogram=histogram,
            )
        if snapshot.nonzero > snapshot.count:
            raise AggregatorError(f"{snapshot.key}: non-zero count exceeds sample count")
        if histogram is not None and histogram.count != snapshot.count:
            raise AggregatorError(f"{snapshot.key}: histogram lost or duplicated samples")
        return snapshot


class Aggregator:
    """
    Per-run metric store shared by all virtual users of that run.

    There is no module-level registry: every run constructs its own
    aggregator and passes it to its workers and evaluator, so independent
    runs in one process never see each other's samples.
    """

    def __init__(self, relative_accuracy: float = 0.01):
        self.relative_accuracy = relative_accuracy
        self._series: dict[str, MetricSeries] = {}
        self._submetrics: dict[str, list[MetricSeries]] = {}
        self._registry_lock = threading.Lock()

    def declare(self, name: str, kind: MetricKind) -> None:
        """Register *name*; re-declaring with the same kind is a no-op."""
        kind = MetricKind(kind)
        with self._registry_lock:
            existing = self._series.get(name)
            if existing is not None:
                if existing.kind is not kind:
                    raise ConfigurationError(
                        f"Metric {name!r} already declared as {existing.kind.value}, not {kind.value}"
                    )
                return
            self._series[name] = MetricSeries(name, kind, relative_accuracy=self.relative_accuracy)
            self._submetrics[name] = []

    def register_submetric(self, name: str, tags: Mapping[str, str]) -> str:
        """
        Track the subset of *name*'s samples whose tags include *tags*.

        Returns:
            The sub-metric key, e.g. ``"http_req_duration{expected_response:true}"``.
        """
        key = metric_key(name, tags)
        with self._registry_lock:
            parent = self._series.get(name)
            if parent is None:
                raise ConfigurationError(f"Unknown metric: {name!r}")
            if key in self._series:
                return key
            series = MetricSeries(name, parent.kind, tags, relative_accuracy=self.relative_accuracy)
            self._series[key] = series
            self._submetrics[name].append(series)
        return key

    def kind_of(self, name: str) -> MetricKind | None:
        series = self._series.get(name)
        return series.kind if series is not None else None

    def has_metric(self, key: str) -> bool:
        return key in self._series

    def metric_keys(self) -> list[str]:
        with self._registry_lock:
            return sorted(self._series)

    def record(self, sample: Sample) -> None:
        """Fold *sample* into its metric and every matching sub-metric."""
        series = self._series.get(sample.metric)
        if series is None:
            raise AggregatorError(f"Sample for undeclared metric {sample.metric!r}")
        series.add(sample.value)
        for submetric in self._submetrics[sample.metric]:
            if submetric.matches(sample.tags):
                submetric.add(sample.value)

    def add(self, metric: str, value: float, tags: Mapping[str, str] | None = None) -> None:
        self.record(Sample(metric=metric, value=value, tags=dict(tags or {})))

    def snapshot(self, key: str) -> SeriesSnapshot:
        try:
            series = self._series[key]
        except KeyError:
            raise KeyError(f"Unknown metric: {key!r}") from None
        return series.snapshot()

    def snapshot_all(self) -> dict[str, SeriesSnapshot]:
        return {key: self.snapshot(key) for key in self.metric_keys()}
