"""
Test-definition overrides loaded from YAML.

CI pipelines tune a built-in profile without touching code by pointing
``--thresholds`` at a YAML file such as::

    thresholds:
      http_req_duration: ["p(95)<500"]
      http_req_failed:
        - threshold: "rate<0.01"
          abortOnFail: true
          delayAbortEval: 10s
    stages:
      - {duration: 30s, target: 5}
      - {duration: 30s, target: 0}
    think_time: [0.5, 1.5]
    request_timeout: 5
    expected_statuses: "200-299"
    seed: 42

Thresholds are merged per metric key: a metric named in the file gets
exactly the expressions listed there, other metrics keep the profile's
thresholds.  Every other key replaces the profile's value.

Key Concepts Demonstrated:
- ``yaml.safe_load`` for untrusted configuration files
- Fail-fast validation with chained ``ConfigurationError`` causes
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from loadgate.engine import TestDefinition
from loadgate.errors import ConfigurationError
from loadgate.http_client import ExpectedStatuses
from loadgate.stages import StageProfile, parse_duration
from loadgate.thresholds import parse_thresholds
from loadgate.vu import ThinkTime

logger = logging.getLogger(__name__)

ALLOWED_KEYS = frozenset(
    {
        "thresholds",
        "stages",
        "start_vus",
        "vus",
        "duration",
        "think_time",
        "request_timeout",
        "expected_statuses",
        "base_url",
        "seed",
        "tags",
        "headers",
    }
)


def load_overrides(path: str | Path) -> dict[str, Any]:
    """
    Read an overrides file.

    Args:
        path: YAML file whose top level is a mapping.

    Returns:
        The parsed mapping (empty for an empty file).

    Raises:
        ConfigurationError: If the file is missing, is not valid YAML, is
            not a mapping, or uses unknown keys.
    """
    try:
        with Path(path).open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigurationError(f"Cannot read overrides file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Overrides file {path} must contain a mapping")
    unknown = sorted(set(data) - ALLOWED_KEYS)
    if unknown:
        raise ConfigurationError(f"Unknown keys in {path}: {', '.join(unknown)}")
    return dict(data)


def _profile_from(overrides: Mapping[str, Any], current: StageProfile) -> StageProfile:
    if "stages" in overrides and ("vus" in overrides or "duration" in overrides):
        raise ConfigurationError("Use either 'stages' or 'vus'/'duration', not both")
    if "start_vus" in overrides and "stages" not in overrides:
        raise ConfigurationError("'start_vus' only applies together with 'stages'")
    if "stages" in overrides:
        stages = overrides["stages"]
        if not isinstance(stages, list):
            raise ConfigurationError("'stages' must be a list")
        return StageProfile.from_config(stages, start_vus=int(overrides.get("start_vus", 0)))
    if "vus" in overrides or "duration" in overrides:
        vus = overrides.get("vus", current.max_target)
        duration = overrides.get("duration", current.total_duration)
        return StageProfile.constant(int(vus), duration)
    return current


def apply_overrides(definition: TestDefinition, overrides: Mapping[str, Any]) -> TestDefinition:
    """Return a copy of *definition* with *overrides* applied."""
    changes: dict[str, Any] = {}

    profile = _profile_from(overrides, definition.profile)
    if profile is not definition.profile:
        changes["profile"] = profile

    if "thresholds" in overrides:
        raw = overrides["thresholds"]
        if not isinstance(raw, Mapping):
            raise ConfigurationError("'thresholds' must map metric names to expressions")
        replacements = parse_thresholds(raw)
        replaced_keys = {threshold.key for threshold in replacements}
        kept = tuple(t for t in definition.thresholds if t.key not in replaced_keys)
        changes["thresholds"] = kept + replacements

    if "think_time" in overrides:
        changes["think_time"] = ThinkTime.parse(overrides["think_time"])
    if "request_timeout" in overrides:
        timeout = parse_duration(overrides["request_timeout"])
        if timeout <= 0:
            raise ConfigurationError("'request_timeout' must be positive")
        changes["request_timeout"] = timeout
    if "expected_statuses" in overrides:
        changes["expected_statuses"] = ExpectedStatuses.parse(overrides["expected_statuses"])
    if "base_url" in overrides:
        changes["base_url"] = str(overrides["base_url"])
    if "seed" in overrides:
        try:
            changes["seed"] = None if overrides["seed"] is None else int(overrides["seed"])
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"'seed' must be an integer: {overrides['seed']!r}") from exc
    for key in ("tags", "headers"):
        if key in overrides:
            value = overrides[key]
            if not isinstance(value, Mapping):
                raise ConfigurationError(f"'{key}' must be a mapping")
            changes[key] = {str(k): str(v) for k, v in value.items()}

    if changes:
        logger.info("Applying overrides to %s: %s", definition.name, ", ".join(sorted(changes)))
    return dataclasses.replace(definition, **changes)


def load_definition(definition: TestDefinition, path: str | Path | None) -> TestDefinition:
    """Apply the overrides file at *path* (if any) to *definition*."""
    if path is None:
        return definition
    return apply_overrides(definition, load_overrides(path))
