"""
Stress test: push the target towards its breaking point.

Warms up to 20 VUs, climbs to 50, holds, spikes to 100 and recovers over
ten minutes with short pauses.  Thresholds are deliberately relaxed; the
summary interprets the failure rate through the stress insight bands.
"""

from __future__ import annotations

from loadgate.engine import TestDefinition
from loadgate.http_client import HttpResponse
from loadgate.metrics import MetricKind
from loadgate.report import InsightPolicy
from loadgate.scenarios.base import EveryNthSelector, IterationRunner
from loadgate.stages import StageProfile
from loadgate.thresholds import parse_thresholds
from loadgate.vu import ThinkTime, VUContext

DESCRIPTION = "20 -> 50 -> 100 -> 0 VUs over 10m with batches; reports stress insights"

STAGES = [
    {"duration": "2m", "target": 20},
    {"duration": "2m", "target": 50},
    {"duration": "2m", "target": 50},
    {"duration": "2m", "target": 100},
    {"duration": "2m", "target": 0},
]

THRESHOLDS = {
    "http_req_duration": ["p(95)<1500"],
    "http_req_failed": ["rate<0.20"],
}


class StressRunner(IterationRunner):
    metrics = {
        "response_time": MetricKind.TREND,
        "successful_requests": MetricKind.COUNTER,
        "failed_requests": MetricKind.COUNTER,
        "error_rate": MetricKind.RATE,
    }

    def __init__(self, create_selector: EveryNthSelector | None = None):
        self.create_selector = create_selector or EveryNthSelector(3)

    def _tally(self, ctx: VUContext, response: HttpResponse, passed: bool) -> None:
        ctx.add("response_time", response.duration_ms)
        ctx.add("successful_requests" if passed else "failed_requests", 1)
        ctx.add("error_rate", 0 if passed else 1)

    def run(self, ctx: VUContext) -> None:
        listing = ctx.get("/posts")
        self._tally(ctx, listing, ctx.check(listing, {"list status 200": lambda r: r.status == 200}))
        ctx.sleep(0.5)

        post_id = ctx.random.randint(1, 100)
        post = ctx.get(f"/posts/{post_id}", name="/posts/{id}")
        self._tally(ctx, post, ctx.check(post, {"post status 200": lambda r: r.status == 200}))

        if self.create_selector.selects(ctx):
            created = ctx.post(
                "/posts",
                json={
                    "title": f"Stress Test Post VU{ctx.vu_id}-{ctx.iteration}",
                    "body": f"Performance test iteration {ctx.iteration}",
                    "userId": 1,
                },
            )
            self._tally(ctx, created, ctx.check(created, {"create status 201": lambda r: r.status == 201}))

        user_id = ctx.random.randint(1, 10)
        for response in ctx.batch(
            [
                {"method": "GET", "path": "/posts"},
                {"method": "GET", "path": f"/users/{user_id}", "name": "/users/{id}"},
                {"method": "GET", "path": f"/comments?postId={post_id}", "name": "/comments"},
            ]
        ):
            self._tally(ctx, response, response.status == 200)


def build() -> TestDefinition:
    return TestDefinition(
        name="stress",
        description=DESCRIPTION,
        profile=StageProfile.from_config(STAGES),
        runner=StressRunner(),
        thresholds=parse_thresholds(THRESHOLDS),
        think_time=ThinkTime.parse(0.3),
        insight_policy=InsightPolicy.default(),
    )
