"""
Load-test engine: wires profile, workers, aggregator and thresholds.

A :class:`LoadTest` owns every piece of state of one run.  Constructing
it validates the whole definition (profile, thresholds against declared
metrics), so configuration errors surface before any thread or socket is
created.  :meth:`LoadTest.run` then drives the scheduler to a terminal
state and freezes the outcome into a :class:`~loadgate.result.RunResult`.

Key Concepts Demonstrated:
- One explicitly constructed :class:`~loadgate.metrics.Aggregator` per run
- Settings derived from the class-based config (``EngineSettings.from_config``)
- Early abort through threshold re-evaluation on every scheduler tick
"""

from __future__ import annotations

import dataclasses
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from loadgate.config import Config, get_config
from loadgate.errors import AggregatorError, ConfigurationError
from loadgate.http_client import CallError, ExpectedStatuses, HttpClient, RequestsHttpClient
from loadgate.metrics import Aggregator, MetricKind, SeriesSnapshot
from loadgate.report import summary_lines
from loadgate.result import MetricSummary, RunResult
from loadgate.scheduler import Scheduler
from loadgate.stages import RunPhase, StageProfile
from loadgate.thresholds import Threshold, ThresholdEvaluator, parse_thresholds, validate_thresholds
from loadgate.vu import ThinkTime, VirtualUser, VUSettings

if TYPE_CHECKING:
    from loadgate.report import InsightPolicy
    from loadgate.scenarios.base import IterationRunner

logger = logging.getLogger(__name__)

BATCH_FANOUT = 3

# Metrics every run records, named as k6 names them.
BUILTIN_METRICS: dict[str, MetricKind] = {
    "http_reqs": MetricKind.COUNTER,
    "http_req_duration": MetricKind.TREND,
    "http_req_failed": MetricKind.RATE,
    "http_req_errors": MetricKind.COUNTER,
    "checks": MetricKind.RATE,
    "iterations": MetricKind.COUNTER,
    "iteration_duration": MetricKind.TREND,
    "iteration_errors": MetricKind.COUNTER,
    "vus": MetricKind.GAUGE,
    "vus_max": MetricKind.GAUGE,
}


@dataclass(frozen=True)
class TestDefinition:
    """
    Everything that describes one test, analogous to a k6 ``options`` block
    plus its default function.

    ``base_url`` and ``request_timeout`` fall back to the engine settings
    when left as ``None``.
    """

    __test__ = False  # not a pytest test class

    name: str
    profile: StageProfile
    runner: IterationRunner
    thresholds: tuple[Threshold, ...] = ()
    base_url: str | None = None
    think_time: ThinkTime = ThinkTime()
    request_timeout: float | None = None
    expected_statuses: ExpectedStatuses = ExpectedStatuses()
    headers: Mapping[str, str] = field(default_factory=dict)
    tags: Mapping[str, str] = field(default_factory=dict)
    seed: int | None = None
    description: str = ""
    insight_policy: InsightPolicy | None = None

    def with_thresholds(self, thresholds: Mapping[str, Any] | tuple[Threshold, ...]) -> TestDefinition:
        """Return a copy whose thresholds are replaced by *thresholds*."""
        if isinstance(thresholds, Mapping):
            thresholds = parse_thresholds(thresholds)
        return dataclasses.replace(self, thresholds=tuple(thresholds))

    def with_profile(self, profile: StageProfile) -> TestDefinition:
        return dataclasses.replace(self, profile=profile)

    def scaled(self, factor: float) -> TestDefinition:
        """Shrink or stretch every stage (handy for quick local runs)."""
        return dataclasses.replace(self, profile=self.profile.scaled(factor))


@dataclass(frozen=True)
class EngineSettings:
    """Engine-wide knobs; see :mod:`loadgate.config` for their meaning."""

    base_url: str = Config.BASE_URL
    auth_token: str | None = None
    request_timeout: float = 10.0
    tick_interval: float = 1.0
    retire_grace_period: float = 2.0
    graceful_stop: float = 30.0
    max_consecutive_crashes: int = 10
    percentile_accuracy: float = 0.01
    transport_pool_size: int = 256

    @classmethod
    def from_config(cls, config: type[Config] | None = None, **overrides: Any) -> EngineSettings:
        """
        Build settings from a config class (default: ``get_config()``).

        Keyword *overrides* win over config values; ``None`` overrides are
        ignored so CLI flags that were not given fall through.
        """
        config = config or get_config()
        values = {
            "base_url": config.BASE_URL,
            "auth_token": config.AUTH_TOKEN,
            "request_timeout": config.REQUEST_TIMEOUT,
            "tick_interval": config.TICK_INTERVAL,
            "retire_grace_period": config.RETIRE_GRACE_PERIOD,
            "graceful_stop": config.GRACEFUL_STOP,
            "max_consecutive_crashes": config.MAX_CONSECUTIVE_CRASHES,
            "percentile_accuracy": config.PERCENTILE_ACCURACY,
            "transport_pool_size": config.TRANSPORT_POOL_SIZE,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)


class LoadTest:
    """
    One executable run of a :class:`TestDefinition`.

    Args:
        definition: What to run.
        client: HTTP collaborator; a :class:`RequestsHttpClient` is created
            (and closed after the run) when omitted.
        settings: Engine settings; defaults to ``EngineSettings.from_config()``.
        strict: Treat indeterminate thresholds as failures.
        clock: Monotonic clock handed to the scheduler.

    Raises:
        ConfigurationError: If thresholds reference unknown metrics or use
            aggregations their metric kind cannot answer.
    """

    def __init__(
        self,
        definition: TestDefinition,
        *,
        client: HttpClient | None = None,
        settings: EngineSettings | None = None,
        strict: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.definition = definition
        self.settings = settings or EngineSettings.from_config()
        self.strict = strict

        self.aggregator = Aggregator(self.settings.percentile_accuracy)
        for name, kind in BUILTIN_METRICS.items():
            self.aggregator.declare(name, kind)
        for name, kind in getattr(definition.runner, "metrics", {}).items():
            if name in BUILTIN_METRICS and BUILTIN_METRICS[name] is not MetricKind(kind):
                raise ConfigurationError(f"Custom metric {name!r} clashes with a built-in metric")
            self.aggregator.declare(name, kind)
        for reason in CallError:
            self.aggregator.register_submetric("http_req_errors", {"reason": reason.value})

        validate_thresholds(definition.thresholds, self.aggregator.kind_of)
        for threshold in definition.thresholds:
            if threshold.tags:
                self.aggregator.register_submetric(threshold.metric, dict(threshold.tags))
        self.evaluator = ThresholdEvaluator(definition.thresholds, self.aggregator.snapshot)

        self._owns_client = client is None
        self.client: HttpClient = client or RequestsHttpClient(pool_size=self._transport_pool_size())
        pool_size = getattr(self.client, "pool_size", None)
        if pool_size is not None and pool_size < definition.profile.max_target:
            logger.warning(
                "Transport pool of %d is smaller than %d VUs; queued calls will count as latency",
                pool_size,
                definition.profile.max_target,
            )
        self.vu_settings = self._build_vu_settings()
        self.scheduler = Scheduler(
            definition.profile,
            self._make_worker,
            tick_interval=self.settings.tick_interval,
            retire_grace_period=self.settings.retire_grace_period,
            graceful_stop=self.settings.graceful_stop,
            on_tick=self._on_tick,
            on_vus=self._on_vus,
            clock=clock,
        )

    def _transport_pool_size(self) -> int:
        # Room for every VU to have a full batch in flight.
        return max(self.settings.transport_pool_size, self.definition.profile.max_target * BATCH_FANOUT)

    def _build_vu_settings(self) -> VUSettings:
        definition = self.definition
        headers = dict(definition.headers)
        if self.settings.auth_token and "Authorization" not in headers:
            headers["Authorization"] = f"Bearer {self.settings.auth_token}"
        tags = {"scenario": definition.name, **definition.tags}
        return VUSettings(
            base_url=definition.base_url or self.settings.base_url,
            request_timeout=definition.request_timeout or self.settings.request_timeout,
            think_time=definition.think_time,
            expected_statuses=definition.expected_statuses,
            headers=headers,
            tags=tags,
            max_consecutive_crashes=self.settings.max_consecutive_crashes,
            seed=definition.seed,
        )

    def _make_worker(self, vu_id: int) -> VirtualUser:
        return VirtualUser(vu_id, self.definition.runner, self.aggregator, self.client, self.vu_settings)

    def _on_vus(self, live: int, max_live: int) -> None:
        self.aggregator.add("vus", live)
        self.aggregator.add("vus_max", max_live)

    def _on_tick(self, elapsed: float) -> None:
        try:
            breaches = self.evaluator.abort_breaches(elapsed)
        except AggregatorError as exc:
            self.scheduler.cancel(f"internal fault: {exc}")
            return
        if breaches:
            first = breaches[0]
            self.scheduler.cancel(
                f"threshold {first.metric} {first.expression} breached (observed {first.observed:g})",
                graceful=True,
            )

    def cancel(self, reason: str = "cancelled by operator") -> None:
        """Abort the run from another thread; live VUs are interrupted."""
        self.scheduler.cancel(reason)

    def run(self) -> RunResult:
        """
        Execute the test and return its frozen result.

        The result is always produced, including for cancelled runs; only
        exceptions from outside the engine's own error model propagate.
        """
        definition = self.definition
        started_at = datetime.now(timezone.utc).isoformat(timespec="seconds")
        logger.info(
            "Starting %s test: %d stages, %.0fs, up to %d VUs against %s",
            definition.name,
            len(definition.profile.stages),
            definition.profile.total_duration,
            definition.profile.max_target,
            self.vu_settings.base_url,
        )
        try:
            self.scheduler.run()
        finally:
            if self._owns_client:
                close = getattr(self.client, "close", None)
                if close is not None:
                    close()

        result = self._build_result(started_at)
        logger.info(
            "Finished %s test in %.1fs: state=%s requests=%d passed=%s",
            definition.name,
            result.duration,
            result.state.value,
            result.total_requests,
            result.passed,
        )
        for line in summary_lines(result):
            logger.info(line)
        return result

    def _build_result(self, started_at: str) -> RunResult:
        scheduler = self.scheduler
        state = scheduler.state
        fault_reason = scheduler.cancel_reason if state is RunPhase.CANCELLED else None
        try:
            snapshots = self.aggregator.snapshot_all()
            outcomes = self.evaluator.evaluate()
        except AggregatorError as exc:
            logger.error("Metric store is inconsistent, discarding metrics: %s", exc)
            return RunResult(
                name=self.definition.name,
                state=RunPhase.CANCELLED,
                fault_reason=f"internal fault: {exc}",
                started_at=started_at,
                duration=scheduler.elapsed,
                total_requests=0,
                failure_rate=None,
                iterations=0,
                max_vus=scheduler.max_live,
                warnings=tuple(scheduler.warnings),
                history=tuple(scheduler.history),
                strict=self.strict,
            )

        return RunResult(
            name=self.definition.name,
            state=state,
            fault_reason=fault_reason,
            started_at=started_at,
            duration=scheduler.elapsed,
            total_requests=int(snapshots["http_reqs"].total),
            failure_rate=snapshots["http_req_failed"].rate,
            iterations=int(snapshots["iterations"].total),
            max_vus=scheduler.max_live,
            metrics={key: MetricSummary.from_snapshot(snapshot) for key, snapshot in snapshots.items()},
            thresholds=outcomes,
            warnings=tuple(scheduler.warnings),
            errors_by_reason=_errors_by_reason(snapshots),
            history=tuple(scheduler.history),
            strict=self.strict,
        )


def _errors_by_reason(snapshots: Mapping[str, SeriesSnapshot]) -> dict[str, int]:
    counts = {}
    for snapshot in snapshots.values():
        if snapshot.name != "http_req_errors" or not snapshot.tags:
            continue
        reason = dict(snapshot.tags).get("reason")
        if reason and snapshot.total:
            counts[reason] = int(snapshot.total)
    return counts
