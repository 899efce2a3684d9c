"""
Unit tests for configuration selection and engine settings.

Key SDET Concepts Demonstrated:
- monkeypatch for environment variables
- Verifying precedence: explicit override > config class > default
"""

import pytest

from loadgate.config import Config, DevelopmentConfig, ProductionConfig, TestingConfig, get_config
from loadgate.engine import EngineSettings

pytestmark = pytest.mark.unit


class TestGetConfig:
    """Tests for the config factory."""

    @pytest.mark.parametrize(
        "env, expected",
        [
            ("development", DevelopmentConfig),
            ("testing", TestingConfig),
            ("production", ProductionConfig),
            ("nonsense", Config),
        ],
    )
    def test_explicit_environment(self, env, expected):
        """
        Test that each key maps to its class; unknown keys fall back.

        Arrange: An environment name
        Act: Get the config
        Assert: The matching class is returned
        """
        # Act & Assert
        assert get_config(env) is expected

    def test_environment_variable_is_used_when_env_is_none(self, monkeypatch):
        """
        Test that LOADGATE_ENV selects the config when no key is passed.

        Arrange: LOADGATE_ENV=production
        Act: Get the config with no argument
        Assert: ProductionConfig is returned
        """
        # Arrange
        monkeypatch.setenv("LOADGATE_ENV", "production")

        # Act & Assert
        assert get_config() is ProductionConfig

    def test_testing_config_uses_short_timings(self):
        """
        Test that the testing config keeps scheduler tests fast.

        Arrange: Nothing
        Act: Read TestingConfig
        Assert: Sub-second tick and grace values, no auth token
        """
        # Act & Assert
        assert TestingConfig.TICK_INTERVAL < 1
        assert TestingConfig.RETIRE_GRACE_PERIOD < 1
        assert TestingConfig.AUTH_TOKEN is None


class TestEngineSettings:
    """Tests for EngineSettings.from_config."""

    def test_values_come_from_config_class(self):
        """
        Test that settings mirror the config class.

        Arrange: TestingConfig
        Act: Build settings
        Assert: Timings match the class attributes
        """
        # Act
        settings = EngineSettings.from_config(TestingConfig)

        # Assert
        assert settings.tick_interval == TestingConfig.TICK_INTERVAL
        assert settings.graceful_stop == TestingConfig.GRACEFUL_STOP
        assert settings.max_consecutive_crashes == TestingConfig.MAX_CONSECUTIVE_CRASHES
        assert settings.base_url == TestingConfig.BASE_URL

    def test_overrides_win_and_none_is_ignored(self):
        """
        Test that explicit overrides win; None means "not given".

        Arrange: TestingConfig plus a base_url override and a None timeout
        Act: Build settings
        Assert: base_url overridden, timeout from config
        """
        # Act
        settings = EngineSettings.from_config(TestingConfig, base_url="http://other.test", request_timeout=None)

        # Assert
        assert settings.base_url == "http://other.test"
        assert settings.request_timeout == TestingConfig.REQUEST_TIMEOUT
