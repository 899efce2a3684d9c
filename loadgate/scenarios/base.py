"""
Iteration runner strategy and seedable selection policies.

An :class:`IterationRunner` is the caller-supplied script of one VU
iteration.  The engine never looks inside it: it only calls
:meth:`IterationRunner.run` in a loop and records whatever the runner does
through its :class:`~loadgate.vu.VUContext`.

The "create a post on 20 % of iterations" and "every 3rd iteration"
conditions of the original scripts are explicit selector objects, so a
test can pin them down with a seed or a fixed iteration index.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

from loadgate.errors import ConfigurationError
from loadgate.metrics import MetricKind

if TYPE_CHECKING:
    from loadgate.vu import VUContext


class IterationRunner:
    """
    Base class for VU iteration scripts.

    Attributes:
        metrics: Custom metrics the runner records through ``ctx.add``,
            mapped to their kind.  Undeclared metrics are rejected.
    """

    metrics: Mapping[str, MetricKind] = {}

    def on_start(self, ctx: VUContext) -> None:
        """Per-VU setup, run once before the first iteration."""

    def run(self, ctx: VUContext) -> None:
        raise NotImplementedError


class FunctionRunner(IterationRunner):
    """Adapts a plain ``fn(ctx)`` callable into a runner."""

    def __init__(
        self,
        fn: Callable[[VUContext], None],
        metrics: Mapping[str, MetricKind] | None = None,
        on_start: Callable[[VUContext], None] | None = None,
    ):
        self._fn = fn
        self._on_start = on_start
        self.metrics = dict(metrics or {})

    def on_start(self, ctx: VUContext) -> None:
        if self._on_start is not None:
            self._on_start(ctx)

    def run(self, ctx: VUContext) -> None:
        self._fn(ctx)


@dataclass(frozen=True)
class ProbabilitySelector:
    """Selects an iteration with fixed probability, drawn from the VU's seeded RNG."""

    probability: float

    def __post_init__(self) -> None:
        if not 0.0 <= self.probability <= 1.0:
            raise ConfigurationError(f"Probability must be within [0, 1]: {self.probability}")

    def selects(self, ctx: VUContext) -> bool:
        return ctx.random.random() < self.probability


@dataclass(frozen=True)
class EveryNthSelector:
    """Selects iterations whose index is ``offset`` modulo ``n`` (k6's ``__ITER % n``)."""

    n: int
    offset: int = 0

    def __post_init__(self) -> None:
        if self.n < 1:
            raise ConfigurationError(f"Selector period must be at least 1: {self.n}")

    def selects(self, ctx: VUContext) -> bool:
        return ctx.iteration % self.n == self.offset % self.n
