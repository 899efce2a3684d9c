"""
Unit tests for YAML test-definition overrides.

Key SDET Concepts Demonstrated:
- Configuration files generated per test in tmp_path
- Merge semantics (per-key replacement vs. full replacement)
- Fail-fast validation of untrusted input
"""

import pytest

from loadgate.definitions import apply_overrides, load_definition, load_overrides
from loadgate.errors import ConfigurationError
from loadgate.stages import StageProfile

pytestmark = pytest.mark.unit


@pytest.fixture
def base_definition(make_definition):
    """A 2-VU definition with duration and failure thresholds."""
    return make_definition(
        name="load",
        thresholds={"http_req_duration": ["p(95)<400"], "http_req_failed": ["rate<0.05"]},
    )


@pytest.fixture
def write_yaml(tmp_path):
    """Write text to a YAML file and return its path."""

    def _write(text, name="overrides.yaml"):
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return path

    return _write


class TestLoadOverrides:
    """Tests for reading the overrides file."""

    def test_valid_file_is_parsed(self, write_yaml):
        """
        Test that a mapping with known keys loads.

        Arrange: A YAML file with thresholds and seed
        Act: Load it
        Assert: The mapping is returned as-is
        """
        # Arrange
        path = write_yaml("thresholds:\n  http_req_duration: ['p(95)<500']\nseed: 42\n")

        # Act
        overrides = load_overrides(path)

        # Assert
        assert overrides == {"thresholds": {"http_req_duration": ["p(95)<500"]}, "seed": 42}

    def test_empty_file_is_an_empty_mapping(self, write_yaml):
        """
        Test that an empty file means no overrides.

        Arrange: An empty YAML file
        Act: Load it
        Assert: An empty dict
        """
        # Act & Assert
        assert load_overrides(write_yaml("")) == {}

    @pytest.mark.parametrize(
        "text",
        [
            "thresholds: [unclosed\n",
            "- a\n- b\n",
            "thresholds: {}\nunknown_key: 1\n",
        ],
    )
    def test_invalid_files_are_configuration_errors(self, write_yaml, text):
        """
        Test that bad YAML, non-mappings and unknown keys are rejected.

        Arrange: An invalid overrides file
        Act: Load it
        Assert: ConfigurationError is raised
        """
        # Act & Assert
        with pytest.raises(ConfigurationError):
            load_overrides(write_yaml(text))

    def test_missing_file_is_a_configuration_error(self, tmp_path):
        """
        Test that a missing file is reported as a configuration error.

        Arrange: A path that does not exist
        Act: Load it
        Assert: ConfigurationError is raised
        """
        # Act & Assert
        with pytest.raises(ConfigurationError):
            load_overrides(tmp_path / "nope.yaml")


class TestApplyOverrides:
    """Tests for merging overrides into a definition."""

    def test_thresholds_are_replaced_per_metric(self, base_definition):
        """
        Test that only metrics named in the file get new thresholds.

        Arrange: A definition with duration and failure thresholds
        Act: Override the duration threshold
        Assert: Failure threshold kept, duration threshold replaced
        """
        # Act
        updated = apply_overrides(base_definition, {"thresholds": {"http_req_duration": ["p(95)<500", "p(99)<900"]}})

        # Assert
        pairs = [(t.key, t.expression) for t in updated.thresholds]
        assert pairs == [
            ("http_req_failed", "rate<0.05"),
            ("http_req_duration", "p(95)<500"),
            ("http_req_duration", "p(99)<900"),
        ]
        assert len(base_definition.thresholds) == 2

    def test_stages_replace_profile(self, base_definition):
        """
        Test that a stages list replaces the profile.

        Arrange: A constant 2-VU definition
        Act: Override with a two-stage ramp
        Assert: The profile matches the stages
        """
        # Act
        updated = apply_overrides(
            base_definition,
            {"stages": [{"duration": "30s", "target": 5}, {"duration": "30s", "target": 0}]},
        )

        # Assert
        assert updated.profile == StageProfile.from_config([("30s", 5), ("30s", 0)])

    def test_vus_and_duration_build_constant_profile(self, base_definition):
        """
        Test that vus/duration give a flat profile.

        Arrange: A definition
        Act: Override vus and duration
        Assert: Constant profile with those values
        """
        # Act
        updated = apply_overrides(base_definition, {"vus": 4, "duration": "2m"})

        # Assert
        assert updated.profile == StageProfile.constant(4, 120)

    def test_stages_and_vus_together_are_rejected(self, base_definition):
        """
        Test that the two profile spellings cannot be mixed.

        Arrange: Overrides with both stages and vus
        Act: Apply them
        Assert: ConfigurationError is raised
        """
        # Act & Assert
        with pytest.raises(ConfigurationError):
            apply_overrides(base_definition, {"stages": [("10s", 1)], "vus": 3})

    def test_scalar_settings_are_applied(self, base_definition):
        """
        Test that think time, timeout, statuses, seed, tags and headers apply.

        Arrange: Overrides for every scalar key
        Act: Apply them
        Assert: Each value lands on the definition
        """
        # Act
        updated = apply_overrides(
            base_definition,
            {
                "think_time": [0.5, 1.5],
                "request_timeout": "5s",
                "expected_statuses": "200-299",
                "base_url": "http://staging.test",
                "seed": "42",
                "tags": {"team": "payments"},
                "headers": {"X-Env": 1},
            },
        )

        # Assert
        assert (updated.think_time.minimum, updated.think_time.maximum) == (0.5, 1.5)
        assert updated.request_timeout == 5.0
        assert 299 in updated.expected_statuses and 301 not in updated.expected_statuses
        assert updated.base_url == "http://staging.test"
        assert updated.seed == 42
        assert updated.tags == {"team": "payments"}
        assert updated.headers == {"X-Env": "1"}

    @pytest.mark.parametrize(
        "overrides",
        [
            {"seed": "abc"},
            {"tags": ["a"]},
            {"request_timeout": 0},
            {"thresholds": ["p(95)<1"]},
            {"stages": "fast"},
            {"start_vus": 3},
            {"start_vus": 3, "vus": 5},
            {"expected_statuses": "oops"},
        ],
    )
    def test_invalid_values_are_rejected(self, base_definition, overrides):
        """
        Test that malformed override values raise ConfigurationError.

        Arrange: One invalid override
        Act: Apply it
        Assert: ConfigurationError is raised
        """
        # Act & Assert
        with pytest.raises(ConfigurationError):
            apply_overrides(base_definition, overrides)


class TestLoadDefinition:
    """Tests for the file-or-nothing entry point."""

    def test_no_path_returns_definition_unchanged(self, base_definition):
        """
        Test that no overrides file leaves the definition as-is.

        Arrange: A definition
        Act: Load with path None
        Assert: The same object comes back
        """
        # Act & Assert
        assert load_definition(base_definition, None) is base_definition

    def test_file_overrides_are_applied(self, base_definition, write_yaml):
        """
        Test that a file on disk is loaded and applied.

        Arrange: A YAML file overriding vus
        Act: Load the definition with it
        Assert: The profile has 7 VUs
        """
        # Arrange
        path = write_yaml("vus: 7\n")

        # Act
        updated = load_definition(base_definition, path)

        # Assert
        assert updated.profile.max_target == 7
