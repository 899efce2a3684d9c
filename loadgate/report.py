"""
Summary reporter: renders a :class:`~loadgate.result.RunResult`.

Rendering is a pure projection of the result, so the same result always
produces byte-identical output.  The text layout follows the summaries
the k6 scripts printed from ``handleSummary`` (request metrics, response
times, checks, thresholds, load profile, stress insights); the JSON form
is simply :meth:`RunResult.to_dict`.

Key Concepts Demonstrated:
- Presentation kept out of the engine
- Stress "insight" bands as data (:class:`InsightPolicy`), not branches
- Fixed-width, dot-leader tables for CI logs
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass

from loadgate.metrics import MetricKind
from loadgate.result import RunResult
from loadgate.security import group_by_severity
from loadgate.stages import RunPhase
from loadgate.thresholds import ThresholdStatus

WIDTH = 64
RULE = "-" * WIDTH

BUILTIN_METRICS = frozenset(
    {
        "http_reqs",
        "http_req_duration",
        "http_req_failed",
        "http_req_errors",
        "checks",
        "iterations",
        "iteration_duration",
        "iteration_errors",
        "vus",
        "vus_max",
    }
)

_STATUS_LABELS = {
    ThresholdStatus.PASS: "PASS",
    ThresholdStatus.FAIL: "FAIL",
    ThresholdStatus.INDETERMINATE: "INDETERMINATE",
}


@dataclass(frozen=True)
class InsightBand:
    """
    Interpretation of a failure-rate band.

    ``upper`` is exclusive; ``None`` marks the catch-all band.  Text may use
    ``{max_vus}`` and ``{failure_pct}`` placeholders.
    """

    upper: float | None
    level: str
    insights: tuple[str, ...]
    recommendations: tuple[str, ...]


@dataclass(frozen=True)
class InsightPolicy:
    """Ordered failure-rate bands; the first band whose ``upper`` exceeds the rate wins."""

    bands: tuple[InsightBand, ...]

    def band_for(self, failure_rate: float) -> InsightBand:
        for band in self.bands:
            if band.upper is None or failure_rate < band.upper:
                return band
        return self.bands[-1]

    @classmethod
    def default(cls) -> InsightPolicy:
        return cls(
            bands=(
                InsightBand(
                    upper=0.05,
                    level="healthy",
                    insights=(
                        "System handled {max_vus} VUs with minimal failures (<5%)",
                        "Consider increasing load further to find the true breaking point",
                    ),
                    recommendations=(
                        "System performs well under {max_vus} VU load",
                        "Consider stress testing with higher VU counts",
                        "Current infrastructure handles expected peak load",
                    ),
                ),
                InsightBand(
                    upper=0.15,
                    level="stressed",
                    insights=(
                        "System showing stress signs at {max_vus} VUs (5-15% failures)",
                        "This may be approaching capacity limits",
                    ),
                    recommendations=(
                        "Breaking point is close to the current peak load",
                        "Consider horizontal scaling for peak traffic",
                        "Review application performance bottlenecks",
                    ),
                ),
                InsightBand(
                    upper=0.20,
                    level="breaking",
                    insights=(
                        "System under significant stress (15-20% failures)",
                        "Breaking point identified around {max_vus} VUs",
                    ),
                    recommendations=(
                        "Breaking point identified around the current peak load",
                        "Consider horizontal scaling for peak traffic",
                        "Review application performance bottlenecks",
                    ),
                ),
                InsightBand(
                    upper=None,
                    level="exceeded",
                    insights=(
                        "System exceeded sustainable capacity ({failure_pct} failures)",
                        "Breaking point exceeded - consider scaling infrastructure",
                    ),
                    recommendations=(
                        "Immediate action required - system unstable at {max_vus} VUs",
                        "Infrastructure scaling needed before production load",
                        "Investigate application bottlenecks and optimize",
                    ),
                ),
            )
        )


def _line(label: str, value: str) -> str:
    return f"  {label.ljust(22, '.')}: {value}"


def _ms(value: float | None) -> str:
    return "n/a" if value is None else f"{value:.2f}ms"


def _pct(value: float | None) -> str:
    return "n/a" if value is None else f"{value * 100:.2f}%"


def _number(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.0f}" if float(value).is_integer() else f"{value:.2f}"


def _section(lines: list[str], title: str) -> None:
    lines.append(title)
    lines.append(RULE)


def _request_section(result: RunResult, lines: list[str]) -> None:
    _section(lines, "REQUEST METRICS")
    lines.append(_line("Total Requests", str(result.total_requests)))
    lines.append(_line("Requests/sec", f"{result.requests_per_second:.2f}"))
    lines.append(_line("Failed Requests", _pct(result.failure_rate)))
    success = None if result.failure_rate is None else 1 - result.failure_rate
    lines.append(_line("Success Rate", _pct(success)))
    for reason, count in sorted(result.errors_by_reason.items()):
        lines.append(_line(f"Errors ({reason})", str(count)))
    lines.append("")


def _trend_section(result: RunResult, lines: list[str], key: str, title: str) -> None:
    summary = result.metric(key)
    _section(lines, title)
    if summary is None or summary.count == 0:
        lines.append("  no samples recorded")
        lines.append("")
        return
    lines.append(_line("Min", _ms(summary.get("min"))))
    lines.append(_line("Avg", _ms(summary.get("avg"))))
    lines.append(_line("Median (p50)", _ms(summary.get("med"))))
    for pct in ("p(90)", "p(95)", "p(99)"):
        lines.append(_line(pct, _ms(summary.get(pct))))
    lines.append(_line("Max", _ms(summary.get("max"))))
    lines.append("")


def _check_section(result: RunResult, lines: list[str]) -> None:
    summary = result.metric("checks")
    if summary is None or summary.count == 0:
        return
    _section(lines, "CHECK RESULTS")
    lines.append(_line("Passed", str(summary.get("passes"))))
    lines.append(_line("Failed", str(summary.get("fails"))))
    lines.append(_line("Success Rate", _pct(summary.get("rate"))))
    lines.append("")


def _custom_section(result: RunResult, lines: list[str]) -> None:
    custom = sorted(key for key in result.metrics if key.split("{", 1)[0] not in BUILTIN_METRICS)
    if not custom:
        return
    _section(lines, "CUSTOM METRICS")
    for key in custom:
        summary = result.metrics[key]
        if summary.count == 0:
            lines.append(_line(key, "no samples"))
        elif summary.kind is MetricKind.TREND:
            lines.append(
                _line(key, f"avg={_ms(summary.get('avg'))} p(95)={_ms(summary.get('p(95)'))}")
            )
        elif summary.kind is MetricKind.RATE:
            lines.append(_line(key, _pct(summary.get("rate"))))
        else:
            lines.append(_line(key, _number(summary.get("value"))))
    lines.append("")


def _threshold_section(result: RunResult, lines: list[str]) -> None:
    _section(lines, "THRESHOLD STATUS")
    if not result.thresholds:
        lines.append("  no thresholds configured")
    for outcome in result.thresholds:
        observed = "no samples" if outcome.observed is None else _number(outcome.observed)
        label = f"{outcome.metric} {outcome.expression}"
        lines.append(f"  {label.ljust(46, '.')}: {_STATUS_LABELS[outcome.status]} ({observed})")
    lines.append("")


def _profile_section(result: RunResult, lines: list[str]) -> None:
    _section(lines, "LOAD PROFILE")
    lines.append(_line("Total Iterations", str(result.iterations)))
    lines.append(_line("Iteration Rate", f"{result.iterations_per_second:.2f}/s"))
    lines.append(_line("Max VUs", str(result.max_vus)))
    lines.append(_line("Duration", f"{result.duration:.0f}s"))
    lines.append(_line("Final State", result.state.value))
    if result.fault_reason:
        lines.append(_line("Reason", result.fault_reason))
    lines.append("")


def _insight_section(result: RunResult, lines: list[str], policy: InsightPolicy) -> None:
    if result.failure_rate is None:
        return
    band = policy.band_for(result.failure_rate)
    values = {"max_vus": result.max_vus, "failure_pct": _pct(result.failure_rate)}
    _section(lines, f"STRESS TEST INSIGHTS ({band.level})")
    lines.extend(f"  * {text.format(**values)}" for text in band.insights)
    lines.append("")
    _section(lines, "RECOMMENDATIONS")
    lines.extend(f"  - {text.format(**values)}" for text in band.recommendations)
    lines.append("")


def _security_section(result: RunResult, lines: list[str]) -> None:
    if not result.findings:
        return
    _section(lines, "SECURITY FINDINGS")
    for severity, findings in group_by_severity(result.findings).items():
        lines.append(f"  {severity} ({len(findings)})")
        for finding in findings:
            where = f" [{finding.param}]" if finding.param else ""
            lines.append(f"    {finding.action.value:<5} {finding.name} - {finding.url}{where}")
    lines.append("")


def _overall_line(result: RunResult) -> str:
    if result.state is RunPhase.CANCELLED:
        return f"RUN CANCELLED: {result.fault_reason or 'no reason recorded'}"
    if result.failing_findings:
        return "SECURITY GATE FAILED"
    if result.thresholds_passed:
        return "ALL THRESHOLDS PASSED"
    return "SOME THRESHOLDS FAILED"


def render_text(result: RunResult, insight_policy: InsightPolicy | None = None) -> str:
    """
    Render the human-readable summary.

    Args:
        result: The finished run.
        insight_policy: When given, append stress insights and
            recommendations for the run's failure rate.
    """
    title = f"LOADGATE {result.name.upper()} TEST - SUMMARY"
    lines = ["=" * WIDTH, title.center(WIDTH).rstrip(), "=" * WIDTH, ""]
    _request_section(result, lines)
    _trend_section(result, lines, "http_req_duration", "RESPONSE TIME METRICS")
    _check_section(result, lines)
    _custom_section(result, lines)
    _threshold_section(result, lines)
    _profile_section(result, lines)
    if insight_policy is not None:
        _insight_section(result, lines, insight_policy)
    _security_section(result, lines)
    if result.warnings:
        _section(lines, "WARNINGS")
        lines.extend(f"  ! {warning}" for warning in result.warnings)
        lines.append("")
    lines.append(RULE)
    lines.append(f"  Overall Status: {'PASS' if result.passed else 'FAIL'} - {_overall_line(result)}")
    lines.append(RULE)
    return "\n".join(lines) + "\n"


def render_json(result: RunResult) -> str:
    return json.dumps(result.to_dict(), indent=2) + "\n"


def render(result: RunResult, fmt: str = "text", insight_policy: InsightPolicy | None = None) -> str:
    """Dispatch on output format (``"text"`` or ``"json"``)."""
    if fmt == "json":
        return render_json(result)
    if fmt == "text":
        return render_text(result, insight_policy)
    raise ValueError(f"Unknown output format: {fmt!r}")


def summary_lines(result: RunResult, keys: Sequence[str] = ("http_req_duration",)) -> list[str]:
    """Compact one-line-per-metric digest used in log output."""
    lines = []
    for key in keys:
        summary = result.metric(key)
        if summary is None or summary.count == 0:
            lines.append(f"{key}: no samples")
            continue
        lines.append(
            f"{key}: count={summary.count} avg={_ms(summary.get('avg'))} "
            f"p(95)={_ms(summary.get('p(95)'))} max={_ms(summary.get('max'))}"
        )
    return lines
