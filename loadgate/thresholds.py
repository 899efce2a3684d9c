"""
Pass/fail thresholds over aggregated metrics.

Thresholds use the k6 expression syntax the original scripts were
written in::

    thresholds = {
        "http_req_duration": ["p(95)<400"],
        "http_req_duration{expected_response:true}": ["p(99)<800"],
        "http_req_failed": ["rate<0.05"],
        "checks": [{"threshold": "rate>0.95", "abortOnFail": True}],
    }

Evaluation is a pure function of a metric snapshot.  A threshold whose
metric has no samples is *indeterminate*: it is reported, but it does not
fail the run on its own (rarely-hit code paths must not cause false
failures) unless the caller asks for strict mode.
"""

from __future__ import annotations

import operator
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from loadgate.errors import ConfigurationError
from loadgate.metrics import MetricKind, SeriesSnapshot, metric_key
from loadgate.stages import parse_duration

_EXPRESSION = re.compile(
    r"^\s*(?P<agg>p\(\s*\d+(?:\.\d+)?\s*\)|avg|min|max|med|count|rate|value)"
    r"\s*(?P<op><=|>=|<|>)\s*(?P<bound>[-+]?\d+(?:\.\d+)?)\s*$"
)
_METRIC_SPEC = re.compile(r"^\s*(?P<name>[A-Za-z_][\w.]*)\s*(?:\{(?P<tags>[^}]*)\})?\s*$")

_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}

# Aggregations each metric kind can answer; "p(N)" is handled separately.
_ALLOWED_AGGREGATIONS: dict[MetricKind, frozenset[str]] = {
    MetricKind.TREND: frozenset({"avg", "min", "max", "med", "count"}),
    MetricKind.RATE: frozenset({"rate", "count"}),
    MetricKind.COUNTER: frozenset({"count"}),
    MetricKind.GAUGE: frozenset({"value", "min", "max"}),
}


class ThresholdStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    INDETERMINATE = "indeterminate"


def parse_metric_spec(spec: str) -> tuple[str, dict[str, str]]:
    """
    Split ``"http_req_duration{expected_response:true}"`` into name and tags.

    Raises:
        ConfigurationError: If the spec or one of its tag pairs is malformed.
    """
    match = _METRIC_SPEC.match(spec)
    if match is None:
        raise ConfigurationError(f"Invalid metric name: {spec!r}")
    tags: dict[str, str] = {}
    raw_tags = match.group("tags")
    if raw_tags is not None:
        for pair in raw_tags.split(","):
            key, sep, value = pair.partition(":")
            if not sep or not key.strip() or not value.strip():
                raise ConfigurationError(f"Invalid tag filter {pair!r} in {spec!r}")
            tags[key.strip()] = value.strip()
    return match.group("name"), tags


@dataclass(frozen=True)
class Threshold:
    """
    One immutable threshold such as ``http_req_duration p(95) < 400``.

    Attributes:
        metric: Metric name without tag filter.
        aggregation: ``"p(95)"``, ``"avg"``, ``"rate"`` ...
        operator: One of ``<``, ``<=``, ``>``, ``>=``.
        bound: Literal right-hand side.
        tags: Sub-metric tag filter, sorted pairs.
        abort_on_fail: Stop the run early once this threshold fails.
        delay_abort_eval: Seconds into the run before abort checks start.
    """

    metric: str
    aggregation: str
    operator: str
    bound: float
    tags: tuple[tuple[str, str], ...] = ()
    abort_on_fail: bool = False
    delay_abort_eval: float = 0.0

    @classmethod
    def parse(
        cls,
        metric_spec: str,
        expression: str,
        *,
        abort_on_fail: bool = False,
        delay_abort_eval: Any = 0,
    ) -> Threshold:
        name, tags = parse_metric_spec(metric_spec)
        match = _EXPRESSION.match(expression)
        if match is None:
            raise ConfigurationError(f"Invalid threshold expression for {metric_spec}: {expression!r}")
        aggregation = re.sub(r"\s+", "", match.group("agg"))
        if aggregation.startswith("p("):
            pct = float(aggregation[2:-1])
            if not 0 <= pct <= 100:
                raise ConfigurationError(f"Percentile out of range in {expression!r}")
        return cls(
            metric=name,
            aggregation=aggregation,
            operator=match.group("op"),
            bound=float(match.group("bound")),
            tags=tuple(sorted(tags.items())),
            abort_on_fail=bool(abort_on_fail),
            delay_abort_eval=parse_duration(delay_abort_eval),
        )

    @property
    def key(self) -> str:
        """Metric key this threshold reads (includes the tag filter)."""
        return metric_key(self.metric, dict(self.tags))

    @property
    def expression(self) -> str:
        bound = f"{self.bound:g}"
        return f"{self.aggregation}{self.operator}{bound}"

    def holds(self, value: float) -> bool:
        return _OPERATORS[self.operator](value, self.bound)


def parse_thresholds(config: Mapping[str, Any]) -> tuple[Threshold, ...]:
    """
    Build thresholds from a k6-style ``{metric: [expression, ...]}`` mapping.

    Each entry may be a plain expression string or a mapping with
    ``threshold`` plus optional ``abortOnFail``/``abort_on_fail`` and
    ``delayAbortEval``/``delay_abort_eval``.
    """
    thresholds: list[Threshold] = []
    for metric_spec, entries in config.items():
        if isinstance(entries, (str, Mapping)):
            entries = [entries]
        for entry in entries:
            if isinstance(entry, str):
                thresholds.append(Threshold.parse(metric_spec, entry))
                continue
            if not isinstance(entry, Mapping) or "threshold" not in entry:
                raise ConfigurationError(f"Invalid threshold entry for {metric_spec}: {entry!r}")
            thresholds.append(
                Threshold.parse(
                    metric_spec,
                    str(entry["threshold"]),
                    abort_on_fail=entry.get("abortOnFail", entry.get("abort_on_fail", False)),
                    delay_abort_eval=entry.get("delayAbortEval", entry.get("delay_abort_eval", 0)),
                )
            )
    return tuple(thresholds)


def validate_thresholds(
    thresholds: Iterable[Threshold],
    kind_of: Callable[[str], MetricKind | None],
) -> None:
    """
    Reject thresholds on unknown metrics or with aggregations the metric
    kind cannot answer.  Runs before any worker starts.
    """
    for threshold in thresholds:
        kind = kind_of(threshold.metric)
        if kind is None:
            raise ConfigurationError(f"Threshold references unknown metric {threshold.metric!r}")
        if threshold.aggregation.startswith("p("):
            if kind is not MetricKind.TREND:
                raise ConfigurationError(
                    f"Percentiles need a trend metric; {threshold.metric!r} is a {kind.value}"
                )
        elif threshold.aggregation not in _ALLOWED_AGGREGATIONS[kind]:
            raise ConfigurationError(
                f"Aggregation {threshold.aggregation!r} is not available on "
                f"{kind.value} metric {threshold.metric!r}"
            )


@dataclass(frozen=True)
class ThresholdOutcome:
    """Result of evaluating one threshold against one snapshot."""

    metric: str
    expression: str
    status: ThresholdStatus
    observed: float | None = None
    abort_on_fail: bool = False

    @property
    def passed(self) -> bool:
        return self.status is ThresholdStatus.PASS

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.metric,
            "expression": self.expression,
            "status": self.status.value,
            "observed": self.observed,
            "abort_on_fail": self.abort_on_fail,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ThresholdOutcome:
        return cls(
            metric=data["metric"],
            expression=data["expression"],
            status=ThresholdStatus(data["status"]),
            observed=data.get("observed"),
            abort_on_fail=bool(data.get("abort_on_fail", False)),
        )


def evaluate_threshold(threshold: Threshold, snapshot: SeriesSnapshot) -> ThresholdOutcome:
    """Pure evaluation: the same snapshot always yields the same outcome."""
    observed = snapshot.aggregate(threshold.aggregation)
    if observed is None:
        status = ThresholdStatus.INDETERMINATE
    elif threshold.holds(observed):
        status = ThresholdStatus.PASS
    else:
        status = ThresholdStatus.FAIL
    return ThresholdOutcome(
        metric=threshold.key,
        expression=threshold.expression,
        status=status,
        observed=observed,
        abort_on_fail=threshold.abort_on_fail,
    )


def overall_passed(outcomes: Iterable[ThresholdOutcome], *, strict: bool = False) -> bool:
    """
    Logical AND of all outcomes.

    Indeterminate outcomes only count as failures in *strict* mode.
    """
    for outcome in outcomes:
        if outcome.status is ThresholdStatus.FAIL:
            return False
        if strict and outcome.status is ThresholdStatus.INDETERMINATE:
            return False
    return True


class ThresholdEvaluator:
    """
    Evaluates a fixed list of thresholds through a snapshot callback.

    Args:
        thresholds: Immutable threshold definitions.
        snapshot: Callable returning the current snapshot for a metric key
            (normally :meth:`loadgate.metrics.Aggregator.snapshot`).
    """

    def __init__(
        self,
        thresholds: Sequence[Threshold],
        snapshot: Callable[[str], SeriesSnapshot],
    ):
        self.thresholds = tuple(thresholds)
        self._snapshot = snapshot

    def evaluate(self) -> tuple[ThresholdOutcome, ...]:
        return tuple(
            evaluate_threshold(threshold, self._snapshot(threshold.key))
            for threshold in self.thresholds
        )

    def abort_breaches(self, elapsed: float) -> list[ThresholdOutcome]:
        """Failed ``abort_on_fail`` thresholds whose evaluation delay has passed."""
        breaches = []
        for threshold in self.thresholds:
            if not threshold.abort_on_fail or elapsed < threshold.delay_abort_eval:
                continue
            outcome = evaluate_threshold(threshold, self._snapshot(threshold.key))
            if outcome.status is ThresholdStatus.FAIL:
                breaches.append(outcome)
        return breaches
