"""
Stage profiles: how many virtual users should be live at any instant.

A profile is an ordered list of ``(duration, target)`` stages.  During a
stage the target VU count moves linearly from the previous stage's
target to this stage's target; a stage whose target equals the previous
one is a flat hold.  This matches the ``stages`` option of the k6 scripts
the engine replaces::

    stages = [
        {"duration": "1m", "target": 10},   # ramp up
        {"duration": "3m", "target": 10},   # hold
        {"duration": "1m", "target": 0},    # ramp down
    ]
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from loadgate.errors import ConfigurationError

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


class RunPhase(str, Enum):
    """Run-level lifecycle states."""

    PENDING = "pending"
    RAMPING = "ramping"
    RUNNING = "running"
    DRAINING = "draining"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunPhase.COMPLETED, RunPhase.CANCELLED)


def parse_duration(value: Any) -> float:
    """
    Convert a k6-style duration into seconds.

    Accepts plain numbers (already seconds) or strings such as ``"30s"``,
    ``"2m"``, ``"1m30s"``, ``"500ms"`` or ``"1h"``.

    Raises:
        ConfigurationError: If the value is negative, not finite or
            unparseable.
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip().lower()
        if not text:
            raise ConfigurationError("Duration must not be empty")
        try:
            seconds = float(text)
        except ValueError:
            parts = _DURATION_PART.findall(text)
            if not parts or "".join(n + u for n, u in parts) != text:
                raise ConfigurationError(f"Invalid duration: {value!r}") from None
            seconds = sum(float(number) * _UNIT_SECONDS[unit] for number, unit in parts)
    if not math.isfinite(seconds):
        raise ConfigurationError(f"Duration must be finite, got {value!r}")
    if seconds < 0:
        raise ConfigurationError(f"Duration must be non-negative, got {value!r}")
    return seconds


@dataclass(frozen=True)
class Stage:
    """One ``(duration, target)`` step of a profile."""

    duration: float
    target: int


@dataclass(frozen=True)
class StageProfile:
    """
    Immutable ramp profile.

    Attributes:
        stages: Ordered stages; at least one, total duration above zero.
        start_vus: VU count at ``t == 0`` (the "previous target" of the
            first stage).
    """

    stages: tuple[Stage, ...]
    start_vus: int = 0

    def __post_init__(self) -> None:
        if not self.stages:
            raise ConfigurationError("Stage profile must contain at least one stage")
        if self.start_vus < 0:
            raise ConfigurationError("start_vus must be non-negative")
        for index, stage in enumerate(self.stages):
            if stage.duration < 0:
                raise ConfigurationError(f"Stage {index} has a negative duration")
            if stage.target < 0:
                raise ConfigurationError(f"Stage {index} has a negative target")
        if self.total_duration <= 0:
            raise ConfigurationError("Stage profile must last longer than zero seconds")

    @classmethod
    def constant(cls, vus: int, duration: Any) -> StageProfile:
        """Flat profile equivalent to k6's ``vus`` + ``duration`` options."""
        return cls(stages=(Stage(parse_duration(duration), int(vus)),), start_vus=int(vus))

    @classmethod
    def from_config(
        cls,
        stages: Iterable[Mapping[str, Any] | tuple[Any, Any]],
        start_vus: int = 0,
    ) -> StageProfile:
        """
        Build a profile from dicts (``{"duration": "1m", "target": 10}``)
        or ``(duration, target)`` pairs.
        """
        built: list[Stage] = []
        for raw in stages:
            if isinstance(raw, Mapping):
                try:
                    duration, target = raw["duration"], raw["target"]
                except KeyError as exc:
                    raise ConfigurationError(f"Stage is missing {exc.args[0]!r}: {dict(raw)}") from exc
            else:
                try:
                    duration, target = raw
                except (TypeError, ValueError) as exc:
                    raise ConfigurationError(f"Stage must be a (duration, target) pair: {raw!r}") from exc
            try:
                target_int = int(target)
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"Stage target must be an integer: {target!r}") from exc
            built.append(Stage(parse_duration(duration), target_int))
        return cls(stages=tuple(built), start_vus=int(start_vus))

    @property
    def total_duration(self) -> float:
        return sum(stage.duration for stage in self.stages)

    @property
    def max_target(self) -> int:
        return max([self.start_vus, *(stage.target for stage in self.stages)])

    def _locate(self, elapsed: float) -> tuple[int, float, int]:
        """Return ``(stage_index, stage_start, previous_target)`` for *elapsed*."""
        previous = self.start_vus
        stage_start = 0.0
        for index, stage in enumerate(self.stages):
            stage_end = stage_start + stage.duration
            if elapsed < stage_end:
                return index, stage_start, previous
            previous = stage.target
            stage_start = stage_end
        return len(self.stages), stage_start, previous

    def target_at(self, elapsed: float) -> float:
        """
        Fractional target VU count at *elapsed* seconds.

        Ramps interpolate linearly between the bracketing targets; holds
        are constant.  Past the end of the profile the last target holds.
        """
        if elapsed <= 0:
            return float(self.start_vus)
        index, stage_start, previous = self._locate(elapsed)
        if index >= len(self.stages):
            return float(self.stages[-1].target)
        stage = self.stages[index]
        fraction = (elapsed - stage_start) / stage.duration
        return previous + (stage.target - previous) * fraction

    def vus_at(self, elapsed: float) -> int:
        """Whole number of VUs the scheduler should keep live at *elapsed*."""
        # Round half up; Python's round() is banker's rounding.
        return int(self.target_at(elapsed) + 0.5)

    def phase_at(self, elapsed: float) -> RunPhase:
        """
        Lifecycle phase implied by the profile at *elapsed* seconds.

        A stage with a changing target is ``RAMPING``, an unchanged target
        is ``RUNNING``; the last stage's ramp down to zero and anything
        past the end of the profile is ``DRAINING``.
        """
        if elapsed >= self.total_duration:
            return RunPhase.DRAINING
        index, _, previous = self._locate(max(elapsed, 0.0))
        stage = self.stages[index]
        is_last = index == len(self.stages) - 1
        if is_last and stage.target == 0 and previous > 0:
            return RunPhase.DRAINING
        if stage.target != previous:
            return RunPhase.RAMPING
        return RunPhase.RUNNING

    def scaled(self, factor: float) -> StageProfile:
        """Return a copy with every stage duration multiplied by *factor*."""
        if factor <= 0:
            raise ConfigurationError("Duration scale factor must be positive")
        return StageProfile(
            stages=tuple(Stage(stage.duration * factor, stage.target) for stage in self.stages),
            start_vus=self.start_vus,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_vus": self.start_vus,
            "stages": [{"duration": stage.duration, "target": stage.target} for stage in self.stages],
        }
