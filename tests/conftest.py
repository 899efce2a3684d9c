"""
Shared pytest fixtures for the loadgate test suite.

This module contains fixtures that are shared across all test modules.
Fixtures follow the Arrange-Act-Assert (AAA) pattern and give every test
its own aggregator, client and target so no state leaks between tests.

Key Concepts Demonstrated:
- Fixture scopes (function, session)
- Factory fixtures for configurable test doubles
- A deterministic in-process HTTP client standing in for the network
- A live Flask target served from a background thread
"""

from __future__ import annotations

import os
import socket
import threading
import time
from collections.abc import Callable, Mapping
from typing import Any
from urllib.parse import urlsplit

import pytest
import requests
from faker import Faker
from werkzeug.serving import make_server

# Set testing environment before importing the engine
os.environ["LOADGATE_ENV"] = "testing"
os.environ["FLASK_ENV"] = "testing"

from loadgate.config import get_config
from loadgate.engine import BUILTIN_METRICS, EngineSettings, TestDefinition
from loadgate.errors import VUInterrupted
from loadgate.http_client import CallError, HttpResponse
from loadgate.metrics import Aggregator, MetricKind
from loadgate.result import MetricSummary, RunResult
from loadgate.scenarios.base import FunctionRunner
from loadgate.scheduler import StateTransition
from loadgate.stages import RunPhase, StageProfile
from loadgate.thresholds import ThresholdOutcome, ThresholdStatus
from loadgate.vu import ThinkTime, VUSettings
from target import create_app


# Initialize Faker for generating test data
fake = Faker()


# -----------------------------------------------------------------------------
# Test doubles
# -----------------------------------------------------------------------------

class MockHttpClient:
    """
    In-process HTTP client with deterministic latency and failures.

    Every call reports ``latency_ms`` as its duration.  When
    ``fail_every`` is set, every N-th call (counted across all VUs)
    answers ``failure_status``; with ``failure_status=0`` it reports a
    connection error instead.  Waiting honours the cancel event, so a
    stopped VU is never stuck behind the simulated latency.
    """

    def __init__(
        self,
        latency_ms: float = 50.0,
        fail_every: int = 0,
        status: int = 200,
        failure_status: int = 500,
        body: bytes = b"[]",
        simulate_latency: bool = True,
    ):
        self.latency_ms = latency_ms
        self.fail_every = fail_every
        self.status = status
        self.failure_status = failure_status
        self.body = body
        self.simulate_latency = simulate_latency
        self.calls: list[tuple[str, str]] = []
        self.headers_seen: list[dict[str, str]] = []
        self._lock = threading.Lock()

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.calls)

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        json: Any = None,
        timeout: float,
        cancel_event: threading.Event | None = None,
    ) -> HttpResponse:
        with self._lock:
            self.calls.append((method, url))
            self.headers_seen.append(dict(headers or {}))
            number = len(self.calls)

        if self.simulate_latency and self.latency_ms > 0:
            seconds = self.latency_ms / 1000.0
            if cancel_event is not None:
                if cancel_event.wait(seconds):
                    raise VUInterrupted(f"{method} {url} abandoned on stop")
            else:
                time.sleep(seconds)

        if self.fail_every and number % self.fail_every == 0:
            if self.failure_status == 0:
                return HttpResponse(
                    method=method,
                    url=url,
                    status=0,
                    duration_ms=self.latency_ms,
                    error=CallError.CONNECTION,
                    error_message="connection refused",
                )
            return HttpResponse(method=method, url=url, status=self.failure_status, duration_ms=self.latency_ms)
        return HttpResponse(method=method, url=url, status=self.status, duration_ms=self.latency_ms, body=self.body)


class FlaskHttpClient:
    """
    HttpClient adapter that sends requests to a Flask app in-process.

    Lets scenario runners talk to the demo target without a socket; the
    Flask test client is not thread-safe, so calls are serialized.
    """

    def __init__(self, app):
        self._client = app.test_client()
        self._lock = threading.Lock()

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        json: Any = None,
        timeout: float,
        cancel_event: threading.Event | None = None,
    ) -> HttpResponse:
        parts = urlsplit(url)
        target = parts.path + (f"?{parts.query}" if parts.query else "")
        started = time.perf_counter()
        with self._lock:
            response = self._client.open(target, method=method, headers=dict(headers or {}), json=json)
        return HttpResponse(
            method=method,
            url=url,
            status=response.status_code,
            duration_ms=(time.perf_counter() - started) * 1000.0,
            body=response.get_data(),
            headers=dict(response.headers),
        )


# -----------------------------------------------------------------------------
# Engine Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture(scope="session")
def testing_config():
    """Return the testing configuration class."""
    return get_config("testing")


@pytest.fixture(scope="function")
def engine_settings(testing_config):
    """
    Engine settings with short ticks and grace periods.

    Returns:
        EngineSettings derived from ``TestingConfig``.
    """
    return EngineSettings.from_config(testing_config)


@pytest.fixture(scope="function")
def mock_client() -> Callable[..., MockHttpClient]:
    """
    Factory fixture for :class:`MockHttpClient`.

    Usage:
        def test_something(mock_client):
            client = mock_client(latency_ms=5, fail_every=3)
    """
    return MockHttpClient


@pytest.fixture(scope="function")
def aggregator() -> Aggregator:
    """Fresh aggregator with every built-in metric declared."""
    store = Aggregator()
    for name, kind in BUILTIN_METRICS.items():
        store.declare(name, kind)
    return store


@pytest.fixture(scope="function")
def vu_settings() -> VUSettings:
    """VU settings pointing at a fake host with no think time."""
    return VUSettings(
        base_url="http://target.test",
        request_timeout=1.0,
        think_time=ThinkTime(),
        max_consecutive_crashes=3,
        seed=7,
    )


@pytest.fixture(scope="function")
def make_definition() -> Callable[..., TestDefinition]:
    """
    Factory fixture building a short test definition.

    Usage:
        definition = make_definition(fn, vus=2, duration=1.0)
    """

    def _factory(
        fn: Callable[..., None] | None = None,
        *,
        vus: int = 2,
        duration: float = 1.0,
        thresholds: Mapping[str, Any] | None = None,
        metrics: Mapping[str, Any] | None = None,
        think_time: float = 0.0,
        name: str | None = None,
    ) -> TestDefinition:
        runner = FunctionRunner(fn or (lambda ctx: ctx.get("/posts")), metrics=metrics)
        definition = TestDefinition(
            name=name or fake.slug(),
            profile=StageProfile.constant(vus, duration),
            runner=runner,
            base_url="http://target.test",
            think_time=ThinkTime.parse(think_time),
        )
        if thresholds:
            definition = definition.with_thresholds(thresholds)
        return definition

    return _factory


# -----------------------------------------------------------------------------
# Target Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture(scope="function")
def target_app():
    """
    Create a fresh demo target for each test.

    Yields:
        Flask application instance configured for testing.
    """
    application = create_app("testing")
    yield application


@pytest.fixture(scope="function")
def target_client(target_app):
    """
    Create a Flask test client for the demo target.

    Yields:
        Flask test client for making HTTP requests.
    """
    with target_app.test_client() as test_client:
        yield test_client


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture(scope="session")
def live_target_app():
    """Demo target shared by every test that needs a real socket."""
    return create_app("testing")


@pytest.fixture(scope="session")
def live_target(live_target_app):
    """
    Serve the demo target on a real port.

    This fixture starts a threaded WSGI server in a background thread so
    ``RequestsHttpClient`` can make real HTTP requests.

    Yields:
        str: Base URL of the running server.
    """
    host = "127.0.0.1"
    port = _free_port()
    server = make_server(host, port, live_target_app, threaded=True)
    server_thread = threading.Thread(target=server.serve_forever, daemon=True)
    server_thread.start()

    base_url = f"http://{host}:{port}"
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        try:
            requests.get(f"{base_url}/health", timeout=0.5)
            break
        except requests.RequestException:
            time.sleep(0.05)

    yield base_url

    server.shutdown()
    server_thread.join(timeout=5)


@pytest.fixture(scope="function")
def unused_url() -> str:
    """A URL on a local port nothing listens on."""
    return f"http://127.0.0.1:{_free_port()}"


# -----------------------------------------------------------------------------
# Result Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture(scope="function")
def make_result() -> Callable[..., RunResult]:
    """
    Factory fixture for a finished run result.

    Defaults describe a passing 10s load run with 100 requests; keyword
    arguments replace any field.

    Usage:
        result = make_result(state=RunPhase.CANCELLED, fault_reason="abort")
    """

    def _factory(**overrides: Any) -> RunResult:
        values: dict[str, Any] = {
            "name": "load",
            "state": RunPhase.COMPLETED,
            "duration": 10.0,
            "total_requests": 100,
            "failure_rate": 0.02,
            "iterations": 50,
            "max_vus": 10,
            "metrics": {
                "http_req_duration": MetricSummary(
                    "http_req_duration",
                    MetricKind.TREND,
                    {
                        "kind": "trend",
                        "count": 100,
                        "avg": 120.0,
                        "min": 20.0,
                        "med": 100.0,
                        "max": 480.0,
                        "p(90)": 200.0,
                        "p(95)": 300.0,
                        "p(99)": 450.0,
                    },
                ),
                "checks": MetricSummary(
                    "checks",
                    MetricKind.RATE,
                    {"kind": "rate", "count": 200, "rate": 0.99, "passes": 198, "fails": 2},
                ),
                "total_requests": MetricSummary(
                    "total_requests",
                    MetricKind.COUNTER,
                    {"kind": "counter", "count": 100, "value": 100.0},
                ),
            },
            "thresholds": (
                ThresholdOutcome("http_req_duration", "p(95)<400", ThresholdStatus.PASS, 300.0),
                ThresholdOutcome("http_req_failed", "rate<0.05", ThresholdStatus.PASS, 0.02),
            ),
            "errors_by_reason": {"bad_status": 2},
            "history": (
                StateTransition(RunPhase.PENDING, 0.0),
                StateTransition(RunPhase.RAMPING, 0.0),
                StateTransition(RunPhase.RUNNING, 2.5),
                StateTransition(RunPhase.DRAINING, 9.0),
                StateTransition(RunPhase.COMPLETED, 10.0),
            ),
            "started_at": "2026-01-01T00:00:00+00:00",
        }
        values.update(overrides)
        return RunResult(**values)

    return _factory


@pytest.fixture(scope="function")
def target_http_client(target_app) -> FlaskHttpClient:
    """HttpClient double routed to a fresh in-process demo target."""
    return FlaskHttpClient(target_app)
