"""
Demo target service - configuration.

The target is a small stand-in for the JSONPlaceholder API the built-in
profiles were written against, so a load test can run offline and the
integration suite has something real to hit.  Its knobs are fault
injection settings: added latency, a deterministic "fail every Nth
request" switch and a slow endpoint ceiling.

Key Concepts Demonstrated:
- Class-based configuration with inheritance for DRY defaults
- Environment-variable overrides for 12-factor deployability
- A testing configuration with all faults switched off
"""

from __future__ import annotations

import os


class Config:
    """Base (shared) configuration for the demo target."""

    # Milliseconds added to every API response.
    LATENCY_MS: float = float(os.environ.get("TARGET_LATENCY_MS", "0"))

    # When above zero, every Nth API request answers 500.  Deterministic so
    # a load run's failure rate is predictable (N=3 gives ~33 %).
    FAIL_EVERY: int = int(os.environ.get("TARGET_FAIL_EVERY", "0"))

    # Upper bound for /delay/<seconds> so a typo cannot park a worker forever.
    MAX_DELAY_SECONDS: float = float(os.environ.get("TARGET_MAX_DELAY_SECONDS", "30"))

    # Size of the seeded dataset.
    POST_COUNT: int = 100
    USER_COUNT: int = 10
    COMMENTS_PER_POST: int = 5


class DevelopmentConfig(Config):
    """Development overrides: debug mode and a little latency to look realistic."""

    DEBUG: bool = True
    TESTING: bool = False
    LATENCY_MS: float = float(os.environ.get("TARGET_LATENCY_MS", "20"))


class TestingConfig(Config):
    """Test-suite overrides: no injected faults unless a test asks for them."""

    DEBUG: bool = True
    TESTING: bool = True
    LATENCY_MS: float = 0.0
    FAIL_EVERY: int = 0
    MAX_DELAY_SECONDS: float = 5.0


class ProductionConfig(Config):
    """Container overrides; every fault knob comes from the environment."""

    DEBUG: bool = False
    TESTING: bool = False


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}


def get_config(env: str | None = None) -> type[Config]:
    """
    Return the configuration class for the given environment.

    Args:
        env: One of ``"development"``, ``"testing"`` or ``"production"``.
            When *None*, the ``FLASK_ENV`` environment variable is
            consulted, falling back to ``"development"``.
    """
    if env is None:
        env = os.environ.get("FLASK_ENV", "development")
    return config.get(env, config["default"])
