"""
Load test: realistic browsing under expected traffic.

Ramps to 10 VUs, holds, spikes to 20 and ramps down over six minutes.
Each iteration browses the post list, opens a random post, creates a post
on roughly 20 % of iterations and reads a random post's comments.
"""

from __future__ import annotations

from loadgate.engine import TestDefinition
from loadgate.metrics import MetricKind
from loadgate.scenarios.base import IterationRunner, ProbabilitySelector
from loadgate.stages import StageProfile
from loadgate.thresholds import parse_thresholds
from loadgate.vu import ThinkTime, VUContext

DESCRIPTION = "ramp 10 -> hold -> spike 20 -> 0 over 6m; browse, read, create, comment"

STAGES = [
    {"duration": "1m", "target": 10},
    {"duration": "3m", "target": 10},
    {"duration": "1m", "target": 20},
    {"duration": "1m", "target": 0},
]

THRESHOLDS = {
    "http_req_duration": ["p(95)<400"],
    "http_req_duration{expected_response:true}": ["p(99)<800"],
    "http_req_failed": ["rate<0.05"],
    "checks": ["rate>0.95"],
}


class LoadRunner(IterationRunner):
    """
    Args:
        create_selector: Decides which iterations create a post.
    """

    metrics = {
        "get_post_duration": MetricKind.TREND,
        "create_post_duration": MetricKind.TREND,
        "total_requests": MetricKind.COUNTER,
    }

    def __init__(self, create_selector: ProbabilitySelector | None = None):
        self.create_selector = create_selector or ProbabilitySelector(0.2)

    def run(self, ctx: VUContext) -> None:
        with ctx.group("Browse Posts"):
            response = ctx.get("/posts")
            ctx.add("total_requests", 1)
            ctx.check(
                response,
                {
                    "browse: status 200": lambda r: r.status == 200,
                    "browse: has posts": lambda r: isinstance(r.json(), list) and len(r.json()) > 0,
                },
            )
            ctx.sleep(1)

        with ctx.group("View Post Details"):
            post_id = ctx.random.randint(1, 100)
            response = ctx.get(f"/posts/{post_id}", name="/posts/{id}")
            ctx.add("total_requests", 1)
            ctx.add("get_post_duration", response.duration_ms)
            ctx.check(
                response,
                {
                    "details: status 200": lambda r: r.status == 200,
                    "details: has post data": lambda r: r.json().get("id") is not None,
                },
            )
            ctx.sleep(2)

        if self.create_selector.selects(ctx):
            with ctx.group("Create Post"):
                response = ctx.post(
                    "/posts",
                    json={
                        "title": f"Test Post VU{ctx.vu_id}-{ctx.iteration}",
                        "body": "Performance testing with loadgate",
                        "userId": 1,
                    },
                )
                ctx.add("total_requests", 1)
                ctx.add("create_post_duration", response.duration_ms)
                ctx.check(
                    response,
                    {
                        "create: status 201": lambda r: r.status == 201,
                        "create: has id": lambda r: r.json().get("id") is not None,
                    },
                )
                ctx.sleep(1)

        with ctx.group("Get Comments"):
            post_id = ctx.random.randint(1, 100)
            response = ctx.get(f"/posts/{post_id}/comments", name="/posts/{id}/comments")
            ctx.add("total_requests", 1)
            ctx.check(response, {"comments: status 200": lambda r: r.status == 200})
            ctx.sleep(1)


def build() -> TestDefinition:
    return TestDefinition(
        name="load",
        description=DESCRIPTION,
        profile=StageProfile.from_config(STAGES),
        runner=LoadRunner(),
        thresholds=parse_thresholds(THRESHOLDS),
        think_time=ThinkTime.parse(1),
    )
