"""
HTTP client collaborator used by virtual users.

The engine depends only on the narrow :class:`HttpClient` contract: issue
one timed request and return status, duration and body.  Transport
failures come back as values (``HttpResponse.error``), never as
exceptions, so a failed call can be recorded as a failed sample and the
iteration carries on with its next call.

:class:`RequestsHttpClient` is the production implementation built on a
shared ``requests.Session``.  When it is given a cancel event, the call
runs on a transport pool and the caller stops waiting as soon as the
event is set, so a retired virtual user is never stuck behind a long
timeout.

Key Concepts Demonstrated:
- Mapping ``requests.Timeout`` / ``requests.RequestException`` to
  distinct, machine-readable reason codes
- Expected-response policy kept separate from transport errors
- Cancellable in-flight calls without killing threads
"""

from __future__ import annotations

import json as jsonlib
import logging
import threading
import time
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import requests
from requests.adapters import HTTPAdapter

from loadgate.errors import ConfigurationError, VUInterrupted

logger = logging.getLogger(__name__)


class CallError(str, Enum):
    """Reason codes attached to failed-request samples."""

    TIMEOUT = "timeout"
    CONNECTION = "connection_error"
    BAD_STATUS = "bad_status"


@dataclass(frozen=True)
class HttpResponse:
    """
    Outcome of one HTTP call.

    ``status`` is ``0`` when no response was received; ``error`` is set
    for transport failures and, after the expected-response policy has
    been applied, for unexpected statuses.
    """

    method: str
    url: str
    status: int
    duration_ms: float
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)
    error: CallError | None = None
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """Decode the body as JSON; raises ``ValueError`` on malformed bodies."""
        return jsonlib.loads(self.body or b"null")


class HttpClient(Protocol):
    """Contract every HTTP collaborator must satisfy."""

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
        ...


@dataclass(frozen=True)
class ExpectedStatuses:
    """
    Which status codes count as a successful response.

    Defaults to ``200-399`` (k6's ``expected_response`` default).
    """

    ranges: tuple[tuple[int, int], ...] = ((200, 399),)

    @classmethod
    def parse(cls, spec: str | int | list[Any] | tuple[Any, ...]) -> ExpectedStatuses:
        """
        Parse ``"200-299,404"``, ``201`` or ``[200, "300-302"]``.

        Raises:
            ConfigurationError: On malformed entries.
        """
        if isinstance(spec, int):
            items: list[Any] = [spec]
        elif isinstance(spec, str):
            items = [part for part in spec.split(",") if part.strip()]
        else:
            items = list(spec)
        ranges: list[tuple[int, int]] = []
        for item in items:
            text = str(item).strip()
            low, sep, high = text.partition("-")
            try:
                start = int(low)
                end = int(high) if sep else start
            except ValueError as exc:
                raise ConfigurationError(f"Invalid expected status: {item!r}") from exc
            if start > end or start < 100 or end > 599:
                raise ConfigurationError(f"Invalid expected status range: {item!r}")
            ranges.append((start, end))
        if not ranges:
            raise ConfigurationError("Expected statuses must not be empty")
        return cls(tuple(ranges))

    def __contains__(self, status: object) -> bool:
        return isinstance(status, int) and any(low <= status <= high for low, high in self.ranges)


class RequestsHttpClient:
    """
    ``requests``-backed client shared by every virtual user of a run.

    Args:
        session: Optional pre-configured session (auth, proxies, certs).
        pool_size: Connection-pool size and transport thread count.
        poll_interval: How often a waiting caller re-checks its cancel
            event; bounds the cancellation latency of in-flight calls.
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        *,
        pool_size: int = 256,
        poll_interval: float = 0.05,
    ):
        self._session = session or requests.Session()
        adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
        self._session.mount("http://", adapter)
        self._session.mount("https://", adapter)
        self._pool = ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="loadgate-http")
        self._poll_interval = poll_interval
        self.pool_size = pool_size

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
        if cancel_event is None:
            return self._send(method, url, headers, json, timeout)
        if cancel_event.is_set():
            raise VUInterrupted("stop requested before the call was sent")

        # Timed from submission so a saturated pool shows up as latency.
        future = self._pool.submit(self._send, method, url, headers, json, timeout, time.perf_counter())
        while True:
            try:
                return future.result(timeout=self._poll_interval)
            except FutureTimeout:
                if cancel_event.is_set():
                    # The socket timeout still bounds the abandoned call.
                    future.cancel()
                    raise VUInterrupted(f"{method} {url} abandoned on stop") from None

    def _send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str] | None,
        json: Any,
        timeout: float,
        started: float | None = None,
    ) -> HttpResponse:
        if started is None:
            started = time.perf_counter()
        try:
            response = self._session.request(
                method=method,
                url=url,
                headers=dict(headers or {}),
                json=json,
                timeout=timeout,
            )
        except requests.Timeout as exc:
            logger.debug("%s %s timed out after %ss", method, url, timeout)
            return HttpResponse(
                method=method,
                url=url,
                status=0,
                duration_ms=(time.perf_counter() - started) * 1000.0,
                error=CallError.TIMEOUT,
                error_message=str(exc),
            )
        except requests.RequestException as exc:
            # DNS failure, refused connection, reset, TLS error ...
            logger.debug("%s %s failed: %s", method, url, exc)
            return HttpResponse(
                method=method,
                url=url,
                status=0,
                duration_ms=(time.perf_counter() - started) * 1000.0,
                error=CallError.CONNECTION,
                error_message=str(exc),
            )

        return HttpResponse(
            method=method,
            url=url,
            status=response.status_code,
            # requests measures until headers arrive; body read time is included here.
            duration_ms=(time.perf_counter() - started) * 1000.0,
            body=response.content,
            headers=dict(response.headers),
        )

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
        self._session.close()

    def __enter__(self) -> RequestsHttpClient:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()
