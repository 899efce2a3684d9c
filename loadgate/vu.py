"""
Virtual users: one worker thread per simulated client.

A :class:`VirtualUser` runs its iteration runner in a loop::

    while running:
        runner.run(ctx)
        sleep(think_time)

and hands the runner a :class:`VUContext` through which every HTTP call,
check and custom metric is recorded.  Failed calls and failed checks are
samples, not exceptions: the iteration always continues with its next
call unless the runner itself returns early.

Stopping comes in two strengths:

- **graceful**: finish the current iteration, then exit (end of profile,
  early-abort thresholds);
- **interrupt**: wake any sleep and abandon any in-flight call right away
  (retirement on ramp-down, operator abort).

Key Concepts Demonstrated:
- Event-based, cancellable sleeps instead of ``time.sleep``
- Crash containment at the iteration boundary with a crash budget
- Per-VU seeded randomness so selectors are reproducible
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from urllib.parse import urljoin

from loadgate.errors import AggregatorError, ConfigurationError, VUInterrupted
from loadgate.http_client import CallError, ExpectedStatuses, HttpClient, HttpResponse
from loadgate.metrics import Aggregator, Sample
from loadgate.stages import parse_duration

if TYPE_CHECKING:
    from loadgate.scenarios.base import IterationRunner

logger = logging.getLogger(__name__)

# Upper bound between a stop signal and the VU reaching running=False,
# given a client that honours the cancel event.
STOP_LATENCY_TARGET = 1.0


@dataclass(frozen=True)
class ThinkTime:
    """Pause between iterations, uniformly drawn from ``[minimum, maximum]``."""

    minimum: float = 0.0
    maximum: float = 0.0

    def __post_init__(self) -> None:
        if self.minimum < 0 or self.maximum < self.minimum:
            raise ConfigurationError(f"Invalid think time range: {self.minimum}..{self.maximum}")

    @classmethod
    def parse(cls, value: Any) -> ThinkTime:
        """Accept ``1``, ``"500ms"``, ``(1, 3)`` or ``{"min": 1, "max": 3}``."""
        if isinstance(value, ThinkTime):
            return value
        if value is None:
            return cls()
        if isinstance(value, Mapping):
            return cls(parse_duration(value.get("min", 0)), parse_duration(value.get("max", value.get("min", 0))))
        if isinstance(value, (list, tuple)):
            if len(value) != 2:
                raise ConfigurationError(f"Think time range needs two values: {value!r}")
            return cls(parse_duration(value[0]), parse_duration(value[1]))
        seconds = parse_duration(value)
        return cls(seconds, seconds)

    def sample(self, rng: random.Random) -> float:
        if self.minimum == self.maximum:
            return self.minimum
        return rng.uniform(self.minimum, self.maximum)


@dataclass(frozen=True)
class VUSettings:
    """Per-run settings shared by every virtual user."""

    base_url: str
    request_timeout: float = 10.0
    think_time: ThinkTime = ThinkTime()
    expected_statuses: ExpectedStatuses = ExpectedStatuses()
    headers: Mapping[str, str] = field(default_factory=dict)
    tags: Mapping[str, str] = field(default_factory=dict)
    max_consecutive_crashes: int = 10
    seed: int | None = None


@dataclass
class VUState:
    """Mutable state owned exclusively by one virtual user."""

    id: int
    iteration_count: int = 0
    running: bool = False
    consecutive_crashes: int = 0


class VUContext:
    """
    The API an iteration runner uses to talk to the target.

    Every method records its samples into the run's aggregator before
    returning, so samples from one VU are recorded in the order its calls
    complete.
    """

    def __init__(
        self,
        state: VUState,
        aggregator: Aggregator,
        client: HttpClient,
        settings: VUSettings,
        *,
        interrupt: threading.Event,
        discard: threading.Event,
        rng: random.Random,
    ):
        self._state = state
        self._aggregator = aggregator
        self._client = client
        self._settings = settings
        self._interrupt = interrupt
        self._discard = discard
        self._groups: list[str] = []
        self.random = rng
        # Free-form per-VU storage (tokens, ids created by earlier calls).
        self.data: dict[str, Any] = {}

    @property
    def vu_id(self) -> int:
        return self._state.id

    @property
    def iteration(self) -> int:
        """Zero-based index of the current iteration of this VU."""
        return self._state.iteration_count

    @property
    def base_url(self) -> str:
        return self._settings.base_url

    def url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return urljoin(self._settings.base_url.rstrip("/") + "/", path.lstrip("/"))

    # ---- recording ----------------------------------------------------

    def _tags(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        tags = dict(self._settings.tags)
        if self._groups:
            tags["group"] = "::" + "::".join(self._groups)
        if extra:
            tags.update({key: str(value) for key, value in extra.items()})
        return tags

    def _emit(self, metric: str, value: float, tags: Mapping[str, str]) -> None:
        # A force-cancelled VU may still be running; its late samples are dropped.
        if self._discard.is_set():
            return
        self._aggregator.record(Sample(metric=metric, value=value, tags=tags))

    def _record_response(self, response: HttpResponse, name: str, tags: Mapping[str, str] | None) -> None:
        base = self._tags(tags)
        base.setdefault("name", name)
        base.update(method=response.method, status=str(response.status))
        base["expected_response"] = "true" if response.ok else "false"
        self._emit("http_reqs", 1, base)
        self._emit("http_req_duration", response.duration_ms, base)
        self._emit("http_req_failed", 0 if response.ok else 1, base)
        if response.error is not None:
            self._emit("http_req_errors", 1, {**base, "reason": response.error.value})

    def _classify(self, response: HttpResponse, expected: ExpectedStatuses | None) -> HttpResponse:
        if response.error is not None:
            return response
        policy = expected or self._settings.expected_statuses
        if response.status in policy:
            return response
        return HttpResponse(
            method=response.method,
            url=response.url,
            status=response.status,
            duration_ms=response.duration_ms,
            body=response.body,
            headers=response.headers,
            error=CallError.BAD_STATUS,
            error_message=f"unexpected status {response.status}",
        )

    # ---- HTTP ---------------------------------------------------------

    def _send(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        headers: Mapping[str, str] | None = None,
        expected: ExpectedStatuses | None = None,
    ) -> HttpResponse:
        if self._interrupt.is_set():
            raise VUInterrupted(f"VU {self.vu_id} stopped")
        merged = dict(self._settings.headers)
        merged.update(headers or {})
        response = self._client.request(
            method.upper(),
            self.url(path),
            headers=merged,
            json=json,
            timeout=self._settings.request_timeout,
            cancel_event=self._interrupt,
        )
        return self._classify(response, expected)

    def request(
        self,
        method: str,
        path: str,
        *,
        name: str | None = None,
        json: Any = None,
        headers: Mapping[str, str] | None = None,
        tags: Mapping[str, str] | None = None,
        expected: ExpectedStatuses | None = None,
    ) -> HttpResponse:
        """
        Issue one request and record ``http_reqs``, ``http_req_duration``,
        ``http_req_failed`` (and ``http_req_errors`` on failure).

        Args:
            method: HTTP verb.
            path: Absolute URL or path relative to the base URL.
            name: Grouping name for the ``name`` tag (defaults to the URL),
                as k6 does for ``/posts/${id}``-style URLs.
            expected: Per-request override of the expected-status policy.

        Returns:
            The response; transport failures are reported via ``error``.
        """
        response = self._send(method, path, json=json, headers=headers, expected=expected)
        self._record_response(response, name or self.url(path), tags)
        return response

    def get(self, path: str, **kwargs: Any) -> HttpResponse:
        return self.request("GET", path, **kwargs)

    def post(self, path: str, **kwargs: Any) -> HttpResponse:
        return self.request("POST", path, **kwargs)

    def put(self, path: str, **kwargs: Any) -> HttpResponse:
        return self.request("PUT", path, **kwargs)

    def delete(self, path: str, **kwargs: Any) -> HttpResponse:
        return self.request("DELETE", path, **kwargs)

    def batch(self, calls: Sequence[tuple[str, str] | Mapping[str, Any]]) -> list[HttpResponse]:
        """
        Issue several requests in parallel, like ``http.batch``.

        Each call is ``(method, path)`` or a mapping of :meth:`request`
        keyword arguments plus ``method`` and ``path``.  Samples are
        recorded in completion order; responses come back in input order.
        """
        normalised: list[dict[str, Any]] = []
        for call in calls:
            if isinstance(call, Mapping):
                normalised.append(dict(call))
            else:
                method, path = call
                normalised.append({"method": method, "path": path})
        if not normalised:
            return []

        results: list[HttpResponse | None] = [None] * len(normalised)
        with ThreadPoolExecutor(max_workers=len(normalised), thread_name_prefix=f"vu-{self.vu_id}-batch") as pool:
            futures = {
                pool.submit(
                    self._send,
                    spec["method"],
                    spec["path"],
                    json=spec.get("json"),
                    headers=spec.get("headers"),
                    expected=spec.get("expected"),
                ): index
                for index, spec in enumerate(normalised)
            }
            for future in as_completed(futures):
                index = futures[future]
                spec = normalised[index]
                response = future.result()
                self._record_response(response, spec.get("name") or self.url(spec["path"]), spec.get("tags"))
                results[index] = response
        return [response for response in results if response is not None]

    # ---- checks, metrics, pacing ----------------------------------------

    def check(
        self,
        value: Any,
        checks: Mapping[str, Callable[[Any], Any]],
        tags: Mapping[str, str] | None = None,
    ) -> bool:
        """
        Evaluate named assertions and record each as a ``checks`` sample.

        A predicate that raises counts as a failed check.  Check results
        are independent of whether the HTTP call itself succeeded.

        Returns:
            ``True`` only if every predicate passed.
        """
        all_passed = True
        for check_name, predicate in checks.items():
            try:
                passed = bool(predicate(value))
            except Exception as exc:  # noqa: BLE001 - a broken assertion is a failed check
                logger.debug("Check %r raised %s: %s", check_name, type(exc).__name__, exc)
                passed = False
            all_passed = all_passed and passed
            self._emit("checks", 1 if passed else 0, self._tags({**(tags or {}), "check": check_name}))
        return all_passed

    def add(self, metric: str, value: float, tags: Mapping[str, str] | None = None) -> None:
        """Record a sample for a custom metric declared by the runner."""
        if self._aggregator.kind_of(metric) is None:
            raise ConfigurationError(f"Metric {metric!r} was not declared by the iteration runner")
        self._emit(metric, value, self._tags(tags))

    def sleep(self, seconds: float) -> None:
        """Cancellable sleep; raises :class:`VUInterrupted` if the VU is stopped."""
        if seconds <= 0:
            if self._interrupt.is_set():
                raise VUInterrupted(f"VU {self.vu_id} stopped")
            return
        if self._interrupt.wait(seconds):
            raise VUInterrupted(f"VU {self.vu_id} stopped")

    @contextmanager
    def group(self, name: str) -> Iterator[None]:
        """Tag every sample recorded inside the block with ``group``."""
        self._groups.append(name)
        try:
            yield
        finally:
            self._groups.pop()


class VirtualUser:
    """
    One worker thread executing an iteration runner until stopped.

    The scheduler owns the lifecycle: it constructs, starts, stops, joins
    and reaps workers.  The worker only flips its own ``state.running``.
    """

    def __init__(
        self,
        vu_id: int,
        runner: IterationRunner,
        aggregator: Aggregator,
        client: HttpClient,
        settings: VUSettings,
    ):
        self.state = VUState(id=vu_id)
        self.retired_early = False
        self.crash_reason: str | None = None
        self.fault: AggregatorError | None = None
        self._runner = runner
        self._aggregator = aggregator
        self._client = client
        self._settings = settings
        self._interrupt = threading.Event()
        self._wake = threading.Event()
        self._graceful = False
        self._discard = threading.Event()
        seed = None if settings.seed is None else settings.seed * 1_000_003 + vu_id
        self._rng = random.Random(seed)
        self._thread = threading.Thread(target=self._run, name=f"vu-{vu_id}", daemon=True)

    @property
    def id(self) -> int:
        return self.state.id

    def start(self) -> None:
        self.state.running = True
        self._thread.start()

    def stop(self, *, graceful: bool = False) -> None:
        """Signal the worker; graceful stops let the current iteration finish."""
        if graceful:
            self._graceful = True
        else:
            self._interrupt.set()
        self._wake.set()

    def abandon(self) -> None:
        """Force-cancel: interrupt and drop every sample the thread still emits."""
        self._discard.set()
        self.stop()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the thread; returns ``True`` if it has exited."""
        if self._thread.ident is not None:
            self._thread.join(timeout)
        return not self._thread.is_alive()

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def _should_continue(self) -> bool:
        return not (self._interrupt.is_set() or self._graceful)

    def _run(self) -> None:
        ctx = VUContext(
            self.state,
            self._aggregator,
            self._client,
            self._settings,
            interrupt=self._interrupt,
            discard=self._discard,
            rng=self._rng,
        )
        try:
            self._run_loop(ctx)
        except AggregatorError as exc:
            self.fault = exc
            logger.error("VU %d hit an internal metrics fault: %s", self.id, exc)
        finally:
            self.state.running = False
            logger.debug("VU %d exited after %d iterations", self.id, self.state.iteration_count)

    def _run_loop(self, ctx: VUContext) -> None:
        on_start = getattr(self._runner, "on_start", None)
        if on_start is not None:
            try:
                on_start(ctx)
            except VUInterrupted:
                return
            except AggregatorError:
                raise
            except Exception as exc:  # noqa: BLE001 - contained at the VU boundary
                logger.error("VU %d setup failed, retiring it: %s", self.id, exc)
                ctx._emit("iteration_errors", 1, ctx._tags({"error": type(exc).__name__}))
                self.retired_early = True
                self.crash_reason = f"setup failed: {exc}"
                return

        while self._should_continue():
            started = time.perf_counter()
            try:
                self._runner.run(ctx)
            except VUInterrupted:
                return
            except AggregatorError:
                raise
            except Exception as exc:  # noqa: BLE001 - contained at the VU boundary
                self.state.consecutive_crashes += 1
                logger.warning(
                    "VU %d iteration %d crashed (%d in a row): %s",
                    self.id,
                    self.state.iteration_count,
                    self.state.consecutive_crashes,
                    exc,
                )
                ctx._emit("iteration_errors", 1, ctx._tags({"error": type(exc).__name__}))
                if self.state.consecutive_crashes > self._settings.max_consecutive_crashes:
                    logger.error(
                        "VU %d exceeded its crash budget of %d, retiring it",
                        self.id,
                        self._settings.max_consecutive_crashes,
                    )
                    self.retired_early = True
                    self.crash_reason = f"{self.state.consecutive_crashes} consecutive crashes: {exc}"
                    return
            else:
                self.state.consecutive_crashes = 0
                ctx._emit("iterations", 1, ctx._tags())
                ctx._emit("iteration_duration", (time.perf_counter() - started) * 1000.0, ctx._tags())
            finally:
                self.state.iteration_count += 1

            if not self._should_continue():
                return
            pause = self._settings.think_time.sample(self._rng)
            if pause > 0 and self._wake.wait(pause):
                return
