"""
Unit tests for virtual users and their iteration context.

Key SDET Concepts Demonstrated:
- Recording assertions through the aggregator rather than internals
- Crash containment and crash budgets
- Cancellation latency bounds
"""

import random
import threading
import time

import pytest

from loadgate.errors import ConfigurationError, VUInterrupted
from loadgate.http_client import ExpectedStatuses
from loadgate.metrics import MetricKind
from loadgate.scenarios.base import FunctionRunner
from loadgate.vu import STOP_LATENCY_TARGET, ThinkTime, VirtualUser, VUContext, VUSettings, VUState

pytestmark = pytest.mark.unit


@pytest.fixture
def context_factory(aggregator, vu_settings):
    """Build a VUContext around a given client."""

    def _build(client, *, interrupt=None, discard=None, settings=None):
        return VUContext(
            VUState(id=1),
            aggregator,
            client,
            settings or vu_settings,
            interrupt=interrupt or threading.Event(),
            discard=discard or threading.Event(),
            rng=random.Random(1),
        )

    return _build


class TestThinkTime:
    """Tests for think-time parsing and sampling."""

    @pytest.mark.parametrize(
        "value, expected",
        [
            (None, (0.0, 0.0)),
            (1, (1.0, 1.0)),
            ("500ms", (0.5, 0.5)),
            ([1, 3], (1.0, 3.0)),
            ({"min": "1s", "max": "2s"}, (1.0, 2.0)),
        ],
    )
    def test_parse_accepts_supported_forms(self, value, expected):
        """
        Test that numbers, strings, pairs and mappings parse.

        Arrange: A think-time value
        Act: Parse it
        Assert: Minimum and maximum match
        """
        # Act
        think = ThinkTime.parse(value)

        # Assert
        assert (think.minimum, think.maximum) == expected

    @pytest.mark.parametrize("value", [[3, 1], [1, 2, 3], -1])
    def test_parse_rejects_invalid_ranges(self, value):
        """
        Test that reversed, malformed or negative ranges are rejected.

        Arrange: An invalid think-time value
        Act: Parse it
        Assert: ConfigurationError is raised
        """
        # Act & Assert
        with pytest.raises(ConfigurationError):
            ThinkTime.parse(value)

    def test_sample_stays_in_range(self):
        """
        Test that sampled pauses stay within the range.

        Arrange: A 1-3s range and a seeded RNG
        Act: Sample 200 pauses
        Assert: Every pause is in [1, 3]
        """
        # Arrange
        think = ThinkTime(1.0, 3.0)
        rng = random.Random(5)

        # Act
        pauses = [think.sample(rng) for _ in range(200)]

        # Assert
        assert all(1.0 <= pause <= 3.0 for pause in pauses)


class TestRequests:
    """Tests for HTTP calls made through the context."""

    def test_successful_request_records_builtin_metrics(self, context_factory, mock_client, aggregator):
        """
        Test that one call records http_reqs, duration and a zero failure.

        Arrange: A client answering 200 in 50ms
        Act: GET /posts
        Assert: Counter, trend and rate each got one sample
        """
        # Arrange
        ctx = context_factory(mock_client(latency_ms=50, simulate_latency=False))
        key = aggregator.register_submetric("http_req_duration", {"name": "/posts", "expected_response": "true"})

        # Act
        response = ctx.get("/posts", name="/posts")

        # Assert
        assert response.ok
        assert aggregator.snapshot("http_reqs").total == 1
        assert aggregator.snapshot("http_req_duration").avg == 50
        assert aggregator.snapshot("http_req_failed").rate == 0
        assert aggregator.snapshot(key).count == 1

    def test_unexpected_status_is_a_failed_sample_not_an_exception(self, context_factory, mock_client, aggregator):
        """
        Test that a 500 is recorded as a bad_status failure.

        Arrange: A client that always answers 500
        Act: GET /posts
        Assert: The response carries the error; failure rate is 1
        """
        # Arrange
        ctx = context_factory(mock_client(status=500, simulate_latency=False))
        key = aggregator.register_submetric("http_req_errors", {"reason": "bad_status"})

        # Act
        response = ctx.get("/posts")

        # Assert
        assert not response.ok
        assert response.error.value == "bad_status"
        assert aggregator.snapshot("http_req_failed").rate == 1
        assert aggregator.snapshot(key).total == 1

    def test_per_request_expected_statuses(self, context_factory, mock_client, aggregator):
        """
        Test that an expected-status override makes a 404 a success.

        Arrange: A client answering 404
        Act: GET with expected=404
        Assert: The call counts as successful
        """
        # Arrange
        ctx = context_factory(mock_client(status=404, simulate_latency=False))

        # Act
        response = ctx.get("/posts/999", expected=ExpectedStatuses.parse(404))

        # Assert
        assert response.ok
        assert aggregator.snapshot("http_req_failed").rate == 0

    def test_headers_and_base_url_are_applied(self, context_factory, mock_client):
        """
        Test that relative paths join the base URL and default headers are sent.

        Arrange: Settings with an Authorization header
        Act: POST to a relative path
        Assert: The client saw the full URL and the header
        """
        # Arrange
        client = mock_client(simulate_latency=False)
        settings = VUSettings(base_url="http://target.test/api/", headers={"Authorization": "Bearer t"})
        ctx = context_factory(client, settings=settings)

        # Act
        ctx.post("/posts", json={"title": "x"})

        # Assert
        assert client.calls == [("POST", "http://target.test/api/posts")]
        assert client.headers_seen[0]["Authorization"] == "Bearer t"

    def test_batch_returns_responses_in_input_order(self, context_factory, mock_client, aggregator):
        """
        Test that batch runs calls in parallel but keeps input order.

        Arrange: Three calls
        Act: Run them as a batch
        Assert: Responses match the input URLs; three samples recorded
        """
        # Arrange
        ctx = context_factory(mock_client(latency_ms=20))

        # Act
        responses = ctx.batch([("GET", "/posts"), ("GET", "/users/1"), {"method": "GET", "path": "/comments"}])

        # Assert
        assert [r.url for r in responses] == [
            "http://target.test/posts",
            "http://target.test/users/1",
            "http://target.test/comments",
        ]
        assert aggregator.snapshot("http_reqs").total == 3

    def test_groups_tag_samples(self, context_factory, mock_client, aggregator):
        """
        Test that nested groups tag samples with a ::-joined path.

        Arrange: A sub-metric for group ::outer::inner
        Act: Make one call inside both groups and one outside
        Assert: Only the grouped call matches
        """
        # Arrange
        ctx = context_factory(mock_client(simulate_latency=False))
        key = aggregator.register_submetric("http_reqs", {"group": "::outer::inner"})

        # Act
        with ctx.group("outer"):
            with ctx.group("inner"):
                ctx.get("/posts")
        ctx.get("/posts")

        # Assert
        assert aggregator.snapshot(key).total == 1
        assert aggregator.snapshot("http_reqs").total == 2

    def test_discarded_context_records_nothing(self, context_factory, mock_client, aggregator):
        """
        Test that a force-cancelled VU's late samples are dropped.

        Arrange: A context whose discard event is set
        Act: Make a call and a check
        Assert: No samples were recorded
        """
        # Arrange
        discard = threading.Event()
        discard.set()
        ctx = context_factory(mock_client(simulate_latency=False), discard=discard)

        # Act
        ctx.check(ctx.get("/posts"), {"ok": lambda r: r.ok})

        # Assert
        assert aggregator.snapshot("http_reqs").count == 0
        assert aggregator.snapshot("checks").count == 0

    def test_interrupted_context_refuses_new_calls(self, context_factory, mock_client):
        """
        Test that a stopped VU cannot start another call.

        Arrange: A context whose interrupt event is set
        Act: GET /posts
        Assert: VUInterrupted is raised and the client was not called
        """
        # Arrange
        interrupt = threading.Event()
        interrupt.set()
        client = mock_client()
        ctx = context_factory(client, interrupt=interrupt)

        # Act & Assert
        with pytest.raises(VUInterrupted):
            ctx.get("/posts")
        assert client.call_count == 0


class TestChecksAndMetrics:
    """Tests for checks, custom metrics and sleeps."""

    def test_check_records_each_assertion(self, context_factory, mock_client, aggregator):
        """
        Test that each named check becomes one checks sample.

        Arrange: One passing, one failing and one raising predicate
        Act: Run the checks
        Assert: Returns False; 1 pass and 2 fails recorded
        """
        # Arrange
        ctx = context_factory(mock_client())
        key = aggregator.register_submetric("checks", {"check": "raises"})

        # Act
        passed = ctx.check(
            {"id": 1},
            {
                "has id": lambda body: body["id"] == 1,
                "has title": lambda body: "title" in body,
                "raises": lambda body: body["missing"],
            },
        )

        # Assert
        assert passed is False
        checks = aggregator.snapshot("checks")
        assert (checks.passes, checks.fails) == (1, 2)
        assert aggregator.snapshot(key).fails == 1

    def test_undeclared_custom_metric_is_rejected(self, context_factory, mock_client):
        """
        Test that ctx.add needs a declared metric.

        Arrange: A context without custom metrics
        Act: Add to "not_declared"
        Assert: ConfigurationError is raised
        """
        # Arrange
        ctx = context_factory(mock_client())

        # Act & Assert
        with pytest.raises(ConfigurationError):
            ctx.add("not_declared", 1)

    def test_declared_custom_metric_records(self, context_factory, mock_client, aggregator):
        """
        Test that ctx.add records into a declared metric.

        Arrange: A declared trend
        Act: Add two values
        Assert: The trend averages them
        """
        # Arrange
        aggregator.declare("get_post_duration", MetricKind.TREND)
        ctx = context_factory(mock_client())

        # Act
        ctx.add("get_post_duration", 10)
        ctx.add("get_post_duration", 30)

        # Assert
        assert aggregator.snapshot("get_post_duration").avg == 20

    def test_sleep_is_interrupted_by_stop(self, context_factory, mock_client):
        """
        Test that ctx.sleep wakes as soon as the VU is stopped.

        Arrange: A 10s sleep and a stop after 0.1s
        Act: Sleep
        Assert: VUInterrupted is raised well within a second
        """
        # Arrange
        interrupt = threading.Event()
        ctx = context_factory(mock_client(), interrupt=interrupt)
        threading.Timer(0.1, interrupt.set).start()
        started = time.monotonic()

        # Act & Assert
        with pytest.raises(VUInterrupted):
            ctx.sleep(10)
        assert time.monotonic() - started < STOP_LATENCY_TARGET


class TestVirtualUser:
    """Tests for the worker loop."""

    def test_iterations_are_recorded(self, aggregator, mock_client, vu_settings):
        """
        Test that successful iterations emit iterations and iteration_duration.

        Arrange: A VU making one 5ms call per iteration
        Act: Run it for 0.2s, then stop gracefully
        Assert: Iterations were counted and the VU exited
        """
        # Arrange
        runner = FunctionRunner(lambda ctx: ctx.get("/posts"))
        vu = VirtualUser(1, runner, aggregator, mock_client(latency_ms=5), vu_settings)

        # Act
        vu.start()
        time.sleep(0.2)
        vu.stop(graceful=True)
        exited = vu.join(1)

        # Assert
        assert exited
        assert vu.state.running is False
        iterations = aggregator.snapshot("iterations").total
        assert iterations >= 1
        assert aggregator.snapshot("iteration_duration").count == iterations

    def test_crash_budget_retires_the_vu(self, aggregator, mock_client, vu_settings):
        """
        Test that a VU whose iteration always raises retires itself.

        Arrange: A runner that raises and a crash budget of 3
        Act: Start the VU and wait for it
        Assert: 4 crashes recorded, VU retired early with a reason
        """
        # Arrange
        def explode(ctx):
            raise ValueError("script bug")

        vu = VirtualUser(1, FunctionRunner(explode), aggregator, mock_client(), vu_settings)

        # Act
        vu.start()
        exited = vu.join(2)

        # Assert
        assert exited
        assert vu.retired_early
        assert "script bug" in vu.crash_reason
        assert aggregator.snapshot("iteration_errors").total == vu_settings.max_consecutive_crashes + 1
        assert aggregator.snapshot("iterations").total == 0

    def test_failed_setup_retires_the_vu(self, aggregator, mock_client, vu_settings):
        """
        Test that a failing on_start retires the VU before any iteration.

        Arrange: A runner whose setup raises
        Act: Start the VU
        Assert: Retired early, no iterations ran
        """
        # Arrange
        calls = []

        def setup(ctx):
            raise RuntimeError("login failed")

        runner = FunctionRunner(lambda ctx: calls.append(1), on_start=setup)
        vu = VirtualUser(1, runner, aggregator, mock_client(), vu_settings)

        # Act
        vu.start()
        vu.join(1)

        # Assert
        assert vu.retired_early
        assert vu.crash_reason == "setup failed: login failed"
        assert calls == []

    def test_stop_interrupts_in_flight_call(self, aggregator, mock_client, vu_settings):
        """
        Test that a hard stop ends the VU while a long call is in flight.

        Arrange: A client with 5s latency that honours the cancel event
        Act: Stop the VU 0.1s into the call
        Assert: The VU exits within the stop-latency target
        """
        # Arrange
        vu = VirtualUser(1, FunctionRunner(lambda ctx: ctx.get("/slow")), aggregator, mock_client(latency_ms=5000), vu_settings)
        vu.start()
        time.sleep(0.1)

        # Act
        started = time.monotonic()
        vu.stop()
        exited = vu.join(STOP_LATENCY_TARGET)

        # Assert
        assert exited
        assert time.monotonic() - started < STOP_LATENCY_TARGET
        assert aggregator.snapshot("http_reqs").count == 0

    def test_seeded_vus_draw_reproducible_numbers(self, aggregator, mock_client, vu_settings):
        """
        Test that the same seed and VU id give the same random sequence.

        Arrange: Two VUs with id 3 and the same seed
        Act: Run one iteration on each, collecting ctx.random draws
        Assert: The draws are identical
        """
        # Arrange
        draws = {1: [], 2: []}

        def make_runner(bucket):
            def run(ctx):
                draws[bucket].append(ctx.random.random())
                raise VUInterrupted("one iteration is enough")

            return FunctionRunner(run)

        first = VirtualUser(3, make_runner(1), aggregator, mock_client(), vu_settings)
        second = VirtualUser(3, make_runner(2), aggregator, mock_client(), vu_settings)

        # Act
        first.start()
        second.start()
        first.join(1)
        second.join(1)

        # Assert
        assert draws[1] == draws[2]
        assert len(draws[1]) == 1
