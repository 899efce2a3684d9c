"""
Smoke test: a quick functional health check before heavier runs.

Two VUs for 30 seconds list posts, read one post and create one, with
tight per-call checks.  A separate ``errors`` rate records whether each
step's checks all passed.
"""

from __future__ import annotations

from loadgate.engine import TestDefinition
from loadgate.metrics import MetricKind
from loadgate.scenarios.base import IterationRunner
from loadgate.stages import StageProfile
from loadgate.thresholds import parse_thresholds
from loadgate.vu import VUContext

DESCRIPTION = "2 VUs for 30s: list, read and create posts with strict checks"

THRESHOLDS = {
    "http_req_duration": ["p(95)<800"],
    "errors": ["rate<0.01"],
    "checks": ["rate>0.95"],
}


def _fast(response) -> bool:
    return response.duration_ms < 400


class SmokeRunner(IterationRunner):
    metrics = {"errors": MetricKind.RATE}

    def run(self, ctx: VUContext) -> None:
        listing = ctx.get("/posts")
        passed = ctx.check(
            listing,
            {
                "GET /posts status is 200": lambda r: r.status == 200,
                "GET /posts has data": lambda r: isinstance(r.json(), list) and len(r.json()) > 0,
                "GET /posts response time < 400ms": _fast,
            },
        )
        ctx.add("errors", 0 if passed else 1)
        ctx.sleep(1)

        post = ctx.get("/posts/1")
        passed = ctx.check(
            post,
            {
                "GET /posts/1 status is 200": lambda r: r.status == 200,
                "GET /posts/1 has post data": lambda r: r.json()["id"] == 1,
                "GET /posts/1 response time < 400ms": _fast,
            },
        )
        ctx.add("errors", 0 if passed else 1)
        ctx.sleep(1)

        created = ctx.post(
            "/posts",
            json={"title": "loadgate smoke test", "body": "Testing API performance", "userId": 1},
        )
        passed = ctx.check(
            created,
            {
                "POST /posts status is 201": lambda r: r.status == 201,
                "POST /posts returns id": lambda r: r.json().get("id") is not None,
                "POST /posts response time < 400ms": _fast,
            },
        )
        ctx.add("errors", 0 if passed else 1)
        ctx.sleep(1)


def build() -> TestDefinition:
    return TestDefinition(
        name="smoke",
        description=DESCRIPTION,
        profile=StageProfile.constant(2, "30s"),
        runner=SmokeRunner(),
        thresholds=parse_thresholds(THRESHOLDS),
    )
