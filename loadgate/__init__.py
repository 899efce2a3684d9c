"""
loadgate - a staged HTTP load-test engine with CI threshold gating.

Typical use from Python::

    from loadgate import LoadTest, StageProfile, TestDefinition, FunctionRunner

    def iteration(ctx):
        response = ctx.get("/posts")
        ctx.check(response, {"status is 200": lambda r: r.status == 200})

    definition = TestDefinition(
        name="example",
        profile=StageProfile.constant(2, "30s"),
        runner=FunctionRunner(iteration),
    ).with_thresholds({"http_req_duration": ["p(95)<500"]})
    result = LoadTest(definition).run()
"""

from loadgate.engine import EngineSettings, LoadTest, TestDefinition
from loadgate.errors import AggregatorError, ConfigurationError, LoadGateError, ScannerError
from loadgate.metrics import Aggregator, MetricKind, Sample
from loadgate.result import RunResult
from loadgate.scenarios.base import EveryNthSelector, FunctionRunner, IterationRunner, ProbabilitySelector
from loadgate.stages import RunPhase, Stage, StageProfile
from loadgate.thresholds import Threshold, ThresholdStatus, parse_thresholds
from loadgate.vu import ThinkTime, VUContext

__version__ = "0.1.0"

__all__ = [
    "Aggregator",
    "AggregatorError",
    "ConfigurationError",
    "EngineSettings",
    "EveryNthSelector",
    "FunctionRunner",
    "IterationRunner",
    "LoadGateError",
    "LoadTest",
    "MetricKind",
    "ProbabilitySelector",
    "RunPhase",
    "RunResult",
    "Sample",
    "ScannerError",
    "Stage",
    "StageProfile",
    "TestDefinition",
    "ThinkTime",
    "Threshold",
    "ThresholdStatus",
    "VUContext",
    "parse_thresholds",
]
