"""
The immutable outcome of one load-test run.

:class:`RunResult` is the only artifact the engine persists.  It is built
once, after the scheduler has reached a terminal state, from the final
metric snapshots and threshold outcomes; afterwards it is only ever
copied (for example to attach security findings), never mutated.

Exit codes follow a three-state convention so that CI can distinguish
"thresholds breached" from "the tool itself failed":

- ``0`` - the run completed and every gate passed
- ``1`` - a threshold failed, the run was cancelled, a security finding
  is configured to fail, or (strict mode) a threshold was indeterminate
- ``2`` - configuration or script error (raised before a result exists)

Key Concepts Demonstrated:
- Frozen dataclasses as a data contract between engine and renderers
- Lossless JSON round trip so ``loadgate check`` can re-gate a saved run
"""

from __future__ import annotations

import dataclasses
import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loadgate.metrics import MetricKind, SeriesSnapshot
from loadgate.scheduler import StateTransition
from loadgate.security import Finding, RuleAction
from loadgate.stages import RunPhase
from loadgate.thresholds import ThresholdOutcome, ThresholdStatus, overall_passed

EXIT_PASS = 0
EXIT_THRESHOLD_BREACH = 1
EXIT_SCRIPT_ERROR = 2


@dataclass(frozen=True)
class MetricSummary:
    """Final summary values of one metric or sub-metric."""

    name: str
    kind: MetricKind
    values: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_snapshot(cls, snapshot: SeriesSnapshot) -> MetricSummary:
        return cls(name=snapshot.key, kind=snapshot.kind, values=snapshot.to_dict())

    @property
    def count(self) -> int:
        return int(self.values.get("count", 0))

    def get(self, key: str) -> Any:
        return self.values.get(key)

    def to_dict(self) -> dict[str, Any]:
        return dict(self.values)

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> MetricSummary:
        return cls(name=name, kind=MetricKind(data["kind"]), values=dict(data))


@dataclass(frozen=True)
class RunResult:
    """
    Final immutable snapshot of a run.

    Attributes:
        name: Test definition name (``"load"``, ``"stress"`` ...).
        state: Terminal run state, ``COMPLETED`` or ``CANCELLED``.
        fault_reason: Why the run was cancelled, if it was.
        duration: Wall-clock seconds from first tick to last reaped VU.
        total_requests: Exact ``http_reqs`` count.
        failure_rate: ``failed / total`` requests, ``None`` with no requests.
        iterations: Completed iterations over all VUs.
        max_vus: Highest live VU count observed.
        metrics: Summaries keyed by metric key (sub-metrics included).
        thresholds: One outcome per configured threshold.
        warnings: Non-fatal problems (unclean VU exits, crash retirements).
        errors_by_reason: Failed request counts per reason code.
        history: Every run-state transition.
        findings: Security findings merged in after the run.
        strict: Whether indeterminate thresholds fail the run.
    """

    name: str
    state: RunPhase
    duration: float
    total_requests: int
    failure_rate: float | None
    iterations: int
    max_vus: int
    metrics: Mapping[str, MetricSummary] = field(default_factory=dict)
    thresholds: tuple[ThresholdOutcome, ...] = ()
    warnings: tuple[str, ...] = ()
    errors_by_reason: Mapping[str, int] = field(default_factory=dict)
    history: tuple[StateTransition, ...] = ()
    findings: tuple[Finding, ...] = ()
    fault_reason: str | None = None
    started_at: str | None = None
    strict: bool = False

    @property
    def requests_per_second(self) -> float:
        return self.total_requests / self.duration if self.duration > 0 else 0.0

    @property
    def iterations_per_second(self) -> float:
        return self.iterations / self.duration if self.duration > 0 else 0.0

    @property
    def thresholds_passed(self) -> bool:
        return overall_passed(self.thresholds, strict=self.strict)

    @property
    def failing_findings(self) -> tuple[Finding, ...]:
        return tuple(finding for finding in self.findings if finding.action is RuleAction.FAIL)

    @property
    def passed(self) -> bool:
        return (
            self.state is RunPhase.COMPLETED
            and self.thresholds_passed
            and not self.failing_findings
        )

    @property
    def exit_code(self) -> int:
        return EXIT_PASS if self.passed else EXIT_THRESHOLD_BREACH

    def metric(self, key: str) -> MetricSummary | None:
        return self.metrics.get(key)

    def outcomes_with(self, status: ThresholdStatus) -> list[ThresholdOutcome]:
        return [outcome for outcome in self.thresholds if outcome.status is status]

    def with_findings(self, findings: Iterable[Finding]) -> RunResult:
        """Return a copy with *findings* appended; the original is untouched."""
        return dataclasses.replace(self, findings=self.findings + tuple(findings))

    def with_warnings(self, warnings: Iterable[str]) -> RunResult:
        return dataclasses.replace(self, warnings=self.warnings + tuple(warnings))

    def with_strict(self, strict: bool) -> RunResult:
        return dataclasses.replace(self, strict=strict)

    # ---- persistence ----------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "fault_reason": self.fault_reason,
            "started_at": self.started_at,
            "duration": self.duration,
            "total_requests": self.total_requests,
            "failure_rate": self.failure_rate,
            "requests_per_second": self.requests_per_second,
            "iterations": self.iterations,
            "max_vus": self.max_vus,
            "strict": self.strict,
            "passed": self.passed,
            "exit_code": self.exit_code,
            "metrics": {key: summary.to_dict() for key, summary in sorted(self.metrics.items())},
            "thresholds": [outcome.to_dict() for outcome in self.thresholds],
            "warnings": list(self.warnings),
            "errors_by_reason": dict(sorted(self.errors_by_reason.items())),
            "history": [transition.to_dict() for transition in self.history],
            "findings": [finding.to_dict() for finding in self.findings],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RunResult:
        """
        Rebuild a result from :meth:`to_dict` output.

        Derived fields (``passed``, ``exit_code``, ``requests_per_second``)
        are recomputed rather than trusted.

        Raises:
            ValueError: If a required field is missing or malformed.
        """
        try:
            return cls(
                name=data["name"],
                state=RunPhase(data["state"]),
                fault_reason=data.get("fault_reason"),
                started_at=data.get("started_at"),
                duration=float(data["duration"]),
                total_requests=int(data["total_requests"]),
                failure_rate=data.get("failure_rate"),
                iterations=int(data.get("iterations", 0)),
                max_vus=int(data.get("max_vus", 0)),
                strict=bool(data.get("strict", False)),
                metrics={
                    key: MetricSummary.from_dict(key, values)
                    for key, values in data.get("metrics", {}).items()
                },
                thresholds=tuple(ThresholdOutcome.from_dict(item) for item in data.get("thresholds", [])),
                warnings=tuple(data.get("warnings", [])),
                errors_by_reason={key: int(value) for key, value in data.get("errors_by_reason", {}).items()},
                history=tuple(
                    StateTransition(RunPhase(item["state"]), float(item["elapsed"]), item.get("reason"))
                    for item in data.get("history", [])
                ),
                findings=tuple(Finding.from_dict(item) for item in data.get("findings", [])),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Malformed run result: {exc}") from exc

    def save(self, path: str | Path) -> Path:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("w", encoding="utf-8") as handle:
            json.dump(self.to_dict(), handle, indent=2)
            handle.write("\n")
        return target

    @classmethod
    def load(cls, path: str | Path) -> RunResult:
        with Path(path).open("r", encoding="utf-8") as handle:
            return cls.from_dict(json.load(handle))
