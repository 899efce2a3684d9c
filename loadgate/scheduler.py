"""
Clock & scheduler: keeps the live VU count on the stage profile.

Once per tick the scheduler asks the profile how many VUs should be live
(``round(target(t))``), then spawns new workers or retires the newest
ones until the live count matches.  Retired workers get a grace period to
exit; a worker still running after that is force-cancelled: its thread is
left to die as a daemon, every sample it still emits is discarded and a
warning lands in the run result.

The run walks a small state machine::

    PENDING -> RAMPING <-> RUNNING -> DRAINING -> COMPLETED
          \\________________________________\\-> CANCELLED

Every transition is logged and kept in :attr:`Scheduler.history`.

Key Concepts Demonstrated:
- Worker factory injection so the loop can be driven with fake workers
- LIFO retirement (highest VU id first) and monotonic ids
- Cancellation via ``threading.Event`` for sub-second stop latency
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from loadgate.stages import RunPhase, StageProfile

logger = logging.getLogger(__name__)


class Worker(Protocol):
    """What the scheduler needs from a VU worker."""

    retired_early: bool
    crash_reason: str | None
    fault: Exception | None

    @property
    def id(self) -> int:
        ...

    def start(self) -> None:
        ...

    def stop(self, *, graceful: bool = False) -> None:
        ...

    def abandon(self) -> None:
        ...

    def join(self, timeout: float | None = None) -> bool:
        ...

    def is_alive(self) -> bool:
        ...


@dataclass(frozen=True)
class StateTransition:
    """One entry of the run's state history."""

    state: RunPhase
    elapsed: float
    reason: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {"state": self.state.value, "elapsed": round(self.elapsed, 3), "reason": self.reason}


class Scheduler:
    """
    Drives one run of a stage profile.

    Args:
        profile: The stage profile to follow.
        worker_factory: Builds an unstarted worker for a VU id.
        tick_interval: Seconds between reconciliations.
        retire_grace_period: Seconds a retired worker gets to exit.
        graceful_stop: Seconds live workers get to finish their iteration
            when the profile ends or a threshold aborts the run.
        on_tick: Called after every reconciliation with the elapsed time;
            may call :meth:`cancel`.
        on_vus: Called with ``(live, max_live)`` whenever they are sampled.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        profile: StageProfile,
        worker_factory: Callable[[int], Worker],
        *,
        tick_interval: float = 1.0,
        retire_grace_period: float = 2.0,
        graceful_stop: float = 30.0,
        on_tick: Callable[[float], None] | None = None,
        on_vus: Callable[[int, int], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.profile = profile
        self._factory = worker_factory
        self.tick_interval = tick_interval
        self.retire_grace_period = retire_grace_period
        self.graceful_stop = graceful_stop
        self._on_tick = on_tick
        self._on_vus = on_vus
        self._clock = clock

        self._live: list[Worker] = []
        self._retiring: list[tuple[Worker, float]] = []
        self._next_id = 1
        self._cancel = threading.Event()
        self._cancel_lock = threading.Lock()
        self.cancel_reason: str | None = None
        self._graceful_cancel = False

        self.state = RunPhase.PENDING
        self.history: list[StateTransition] = [StateTransition(RunPhase.PENDING, 0.0)]
        self.warnings: list[str] = []
        self.max_live = 0
        self.started_at: float | None = None
        self.elapsed = 0.0

    # ---- introspection --------------------------------------------------

    @property
    def live_count(self) -> int:
        return len(self._live)

    @property
    def live_ids(self) -> list[int]:
        return [worker.id for worker in self._live]

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ---- control --------------------------------------------------------

    def cancel(self, reason: str, *, graceful: bool = False) -> None:
        """
        Request the run to stop.  Safe to call from any thread.

        A graceful cancel lets live workers finish their iteration (used
        by abort-on-fail thresholds); otherwise they are interrupted.  The
        first reason wins.
        """
        with self._cancel_lock:
            if self._cancel.is_set():
                return
            self.cancel_reason = reason
            self._graceful_cancel = graceful
            self._cancel.set()
        logger.warning("Cancelling run: %s", reason)

    def _transition(self, state: RunPhase, elapsed: float, reason: str | None = None) -> None:
        if state is self.state or self.state.is_terminal:
            return
        logger.info("Run state %s -> %s at %.2fs", self.state.value, state.value, elapsed)
        self.state = state
        self.history.append(StateTransition(state, elapsed, reason))

    def _spawn(self) -> None:
        vu_id = self._next_id
        self._next_id += 1
        worker = self._factory(vu_id)
        worker.start()
        self._live.append(worker)
        logger.debug("Spawned VU %d", vu_id)

    def _retire_newest(self) -> None:
        worker = self._live.pop()
        worker.stop()
        self._retiring.append((worker, self._clock() + self.retire_grace_period))
        logger.debug("Retiring VU %d", worker.id)

    def _force_cancel(self, worker: Worker) -> None:
        worker.abandon()
        message = f"VU {worker.id} did not exit cleanly"
        logger.warning(message)
        self.warnings.append(message)

    def _reap(self) -> None:
        now = self._clock()
        still_retiring = []
        for worker, deadline in self._retiring:
            if not worker.is_alive():
                continue
            if now >= deadline:
                self._force_cancel(worker)
            else:
                still_retiring.append((worker, deadline))
        self._retiring = still_retiring

        # Workers that retired themselves (crash budget, failed setup).
        for worker in [w for w in self._live if not w.is_alive()]:
            self._live.remove(worker)
            if worker.fault is not None:
                self.cancel(f"internal fault: {worker.fault}")
            elif worker.retired_early:
                message = f"VU {worker.id} retired early: {worker.crash_reason}"
                self.warnings.append(message)

    def _publish_vus(self) -> None:
        self.max_live = max(self.max_live, len(self._live))
        if self._on_vus is not None:
            self._on_vus(len(self._live), self.max_live)

    def reconcile(self, elapsed: float) -> int:
        """
        Bring the live VU count to the profile's target at *elapsed*.

        Returns:
            The target VU count that was applied.
        """
        self._reap()
        if self._cancel.is_set():
            return len(self._live)
        target = self.profile.vus_at(elapsed)
        while len(self._live) < target:
            self._spawn()
        while len(self._live) > target:
            self._retire_newest()
        self._publish_vus()
        self._transition(self.profile.phase_at(elapsed), elapsed)
        return target

    # ---- main loop ------------------------------------------------------

    def run(self) -> RunPhase:
        """
        Execute the profile to completion (or cancellation).

        An exception inside the loop (a worker that cannot start, a failing
        tick hook) cancels the run with an ``internal fault`` reason.

        Returns:
            The terminal state, ``COMPLETED`` or ``CANCELLED``.
        """
        self.started_at = self._clock()
        total = self.profile.total_duration
        try:
            while not self._cancel.is_set():
                elapsed = self._clock() - self.started_at
                if elapsed >= total:
                    break
                self.reconcile(elapsed)
                if self._on_tick is not None:
                    self._on_tick(elapsed)
                self._cancel.wait(min(self.tick_interval, max(total - elapsed, 0.0)))
        except KeyboardInterrupt:
            self.cancel("interrupted by operator")
        except Exception as exc:
            logger.exception("Scheduler failed, cancelling the run")
            self.cancel(f"internal fault: {exc}")
        except BaseException:
            self.cancel("interpreter shutting down")
            self._shutdown(0.0)
            raise

        if self._cancel.is_set():
            self._shutdown(self.graceful_stop if self._graceful_cancel else 0.0)
            self._transition(RunPhase.CANCELLED, self._elapsed(), self.cancel_reason)
        else:
            self._transition(RunPhase.DRAINING, self._elapsed())
            self._shutdown(self.graceful_stop)
            self._transition(RunPhase.COMPLETED, self._elapsed())
        self.elapsed = self._elapsed()
        return self.state

    def _elapsed(self) -> float:
        return 0.0 if self.started_at is None else self._clock() - self.started_at

    def _shutdown(self, grace: float) -> None:
        """Stop every live worker, then reap or force-cancel all of them."""
        for worker in self._live:
            worker.stop(graceful=grace > 0)
        if grace > 0:
            deadline = self._clock() + grace
            for worker in self._live:
                worker.join(max(deadline - self._clock(), 0.0))
            for worker in self._live:
                if worker.is_alive():
                    worker.stop()

        for worker in self._live:
            self._retiring.append((worker, self._clock() + self.retire_grace_period))
        for worker, deadline in self._retiring:
            if not worker.join(max(deadline - self._clock(), 0.0)):
                self._force_cancel(worker)
            elif worker.retired_early:
                self.warnings.append(f"VU {worker.id} retired early: {worker.crash_reason}")
        self._retiring = []
        self._live = []
        self._publish_vus()
