"""
Breakpoint test: long staircase to 300 VUs.

Three ramp-and-hold steps (100, 200, 300 VUs) of one cheap read each
iteration, for locating the load level where latency or errors give way.
"""

from __future__ import annotations

from loadgate.engine import TestDefinition
from loadgate.report import InsightPolicy
from loadgate.scenarios.base import IterationRunner
from loadgate.stages import StageProfile
from loadgate.thresholds import parse_thresholds
from loadgate.vu import ThinkTime, VUContext

DESCRIPTION = "staircase 100 -> 200 -> 300 VUs over 23m; single read per iteration"

STAGES = [
    {"duration": "2m", "target": 100},
    {"duration": "5m", "target": 100},
    {"duration": "2m", "target": 200},
    {"duration": "5m", "target": 200},
    {"duration": "2m", "target": 300},
    {"duration": "5m", "target": 300},
    {"duration": "2m", "target": 0},
]

THRESHOLDS = {
    "http_req_duration": ["p(99)<2000"],
    "http_req_failed": ["rate<0.1"],
}


class BreakpointRunner(IterationRunner):
    def run(self, ctx: VUContext) -> None:
        response = ctx.get("/posts")
        ctx.check(response, {"status is 200": lambda r: r.status == 200})


def build() -> TestDefinition:
    return TestDefinition(
        name="breakpoint",
        description=DESCRIPTION,
        profile=StageProfile.from_config(STAGES),
        runner=BreakpointRunner(),
        thresholds=parse_thresholds(THRESHOLDS),
        think_time=ThinkTime.parse(1),
        insight_policy=InsightPolicy.default(),
    )
