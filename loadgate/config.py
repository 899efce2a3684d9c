"""
Engine configuration.

Defines environment-specific configuration classes for the load-test
engine and its CLI.  Each class captures the default target, request
timeouts and the scheduler timings that decide how quickly virtual users
are spawned, retired and reaped.  The ``get_config`` factory selects the
right class based on the ``LOADGATE_ENV`` environment variable (or an
explicit key).

Key Concepts Demonstrated:
- Class-based configuration with inheritance for DRY defaults
- Environment-variable overrides for 12-factor deployability
- Separate testing configuration with short ticks and timeouts
"""

from __future__ import annotations

import os


class Config:
    """
    Base (shared) configuration for the engine.

    All environment-specific classes inherit from ``Config`` so that
    common defaults only need to be stated once.  Individual settings
    can be overridden by environment variables.
    """

    # Target API root.  The original test scripts ran against the public
    # JSONPlaceholder service; the ``target`` package serves a local copy.
    BASE_URL: str = os.environ.get("LOADGATE_BASE_URL", "https://jsonplaceholder.typicode.com")

    # Optional bearer token added to every request by the built-in scenarios.
    AUTH_TOKEN: str | None = os.environ.get("LOADGATE_AUTH_TOKEN") or None

    # Per-call timeout in seconds.  A call that exceeds it is recorded as a
    # failed sample with reason "timeout".
    REQUEST_TIMEOUT: float = float(os.environ.get("LOADGATE_REQUEST_TIMEOUT", "10"))

    # Scheduler reconciliation interval.
    TICK_INTERVAL: float = float(os.environ.get("LOADGATE_TICK_INTERVAL", "1.0"))

    # Seconds a retired VU gets to exit before it is force-cancelled.
    RETIRE_GRACE_PERIOD: float = float(os.environ.get("LOADGATE_RETIRE_GRACE_PERIOD", "2.0"))

    # Seconds running VUs get to finish their iteration when the profile ends.
    GRACEFUL_STOP: float = float(os.environ.get("LOADGATE_GRACEFUL_STOP", "30"))

    # Consecutive iteration crashes tolerated before a VU is retired early.
    MAX_CONSECUTIVE_CRASHES: int = int(os.environ.get("LOADGATE_MAX_CONSECUTIVE_CRASHES", "10"))

    # Relative accuracy of the latency histogram (0.01 == 1 % error).
    PERCENTILE_ACCURACY: float = float(os.environ.get("LOADGATE_PERCENTILE_ACCURACY", "0.01"))

    # Size of the thread pool that carries in-flight HTTP calls.
    TRANSPORT_POOL_SIZE: int = int(os.environ.get("LOADGATE_TRANSPORT_POOL_SIZE", "256"))

    LOG_LEVEL: str = os.environ.get("LOADGATE_LOG_LEVEL", "INFO")


class DevelopmentConfig(Config):
    """Development-oriented overrides: verbose logging against a local target."""

    BASE_URL: str = os.environ.get("LOADGATE_BASE_URL", "http://localhost:5050")
    LOG_LEVEL: str = os.environ.get("LOADGATE_LOG_LEVEL", "DEBUG")


class TestingConfig(Config):
    """
    Test-suite overrides.

    Points the target at a non-routable host so tests never hit a real
    service, and shrinks every timing so scheduler tests finish quickly.
    """

    BASE_URL: str = os.environ.get("TEST_LOADGATE_BASE_URL", "http://target.test")
    AUTH_TOKEN: str | None = None
    REQUEST_TIMEOUT: float = float(os.environ.get("TEST_LOADGATE_REQUEST_TIMEOUT", "1"))
    TICK_INTERVAL: float = 0.05
    RETIRE_GRACE_PERIOD: float = 0.5
    GRACEFUL_STOP: float = 1.0
    MAX_CONSECUTIVE_CRASHES: int = 5


class ProductionConfig(Config):
    """
    CI/production overrides.

    All values are expected to come from environment variables set by
    the pipeline; only the log level is pinned.
    """

    LOG_LEVEL: str = os.environ.get("LOADGATE_LOG_LEVEL", "INFO")


# Lookup table mapping environment name strings to their config classes.
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": Config,
}


def get_config(env: str | None = None) -> type[Config]:
    """
    Return the configuration class for the given environment.

    Args:
        env: One of ``"development"``, ``"testing"`` or ``"production"``.
            When *None*, the ``LOADGATE_ENV`` environment variable is
            consulted.

    Returns:
        The ``Config`` subclass matching the requested environment, or
        the base ``Config`` if the key is unrecognised.
    """
    if env is None:
        env = os.environ.get("LOADGATE_ENV", "default")
    return config.get(env, config["default"])
