"""
Built-in test profiles.

Each module exposes ``build() -> TestDefinition``; :func:`get_profile`
looks them up by name for the CLI.
"""

from __future__ import annotations

from collections.abc import Callable

from loadgate.engine import TestDefinition
from loadgate.errors import ConfigurationError
from loadgate.scenarios import breakpoint, load, smoke, stress
from loadgate.scenarios.base import EveryNthSelector, FunctionRunner, IterationRunner, ProbabilitySelector

PROFILES: dict[str, tuple[Callable[[], TestDefinition], str]] = {
    "smoke": (smoke.build, smoke.DESCRIPTION),
    "load": (load.build, load.DESCRIPTION),
    "stress": (stress.build, stress.DESCRIPTION),
    "breakpoint": (breakpoint.build, breakpoint.DESCRIPTION),
}


def get_profile(name: str) -> TestDefinition:
    """
    Build the named built-in test definition.

    Raises:
        ConfigurationError: If no profile has that name.
    """
    try:
        build, _ = PROFILES[name]
    except KeyError:
        available = ", ".join(sorted(PROFILES))
        raise ConfigurationError(f"Unknown profile {name!r}; available: {available}") from None
    return build()


def available_profiles() -> list[tuple[str, str]]:
    return [(name, description) for name, (_, description) in sorted(PROFILES.items())]


__all__ = [
    "EveryNthSelector",
    "FunctionRunner",
    "IterationRunner",
    "PROFILES",
    "ProbabilitySelector",
    "available_profiles",
    "get_profile",
]
