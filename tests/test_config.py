"""Tests for configuration models."""

import pytest
from pydantic import ValidationError

from tracefilter.config import SMCConfig


class TestSMCConfig:
    """Tests for SMCConfig."""

    def test_default_values(self):
        """Default config should have expected values."""
        config = SMCConfig()

        assert config.n_particles == 100
        assert config.ess_threshold == 0.5
        assert config.resampling_method == "multinomial"
        assert config.sort_particles is True
        assert config.on_invalid == "warn"
        assert config.n_rejuvenation_steps == 0
        assert config.rejuvenation_method == "move"

    def test_custom_values(self):
        """Custom values should be accepted."""
        config = SMCConfig(
            n_particles=500,
            ess_threshold=0.7,
            resampling_method="stratified",
            on_invalid="error",
        )

        assert config.n_particles == 500
        assert config.ess_threshold == 0.7
        assert config.resampling_method == "stratified"
        assert config.on_invalid == "error"

    def test_immutable(self):
        """Config should be frozen."""
        config = SMCConfig()

        with pytest.raises(ValidationError):
            config.n_particles = 500

    def test_n_particles_validation(self):
        """n_particles must be positive."""
        with pytest.raises(ValidationError):
            SMCConfig(n_particles=0)

    def test_ess_threshold_range(self):
        """ess_threshold must be in [0, 1]."""
        with pytest.raises(ValidationError):
            SMCConfig(ess_threshold=1.5)

        with pytest.raises(ValidationError):
            SMCConfig(ess_threshold=-0.1)

    def test_unknown_resampling_method(self):
        """Only the supported resampling methods are accepted."""
        with pytest.raises(ValidationError):
            SMCConfig(resampling_method="systematic")

    def test_unknown_policy(self):
        """Only the supported invalid weight policies are accepted."""
        with pytest.raises(ValidationError):
            SMCConfig(on_invalid="ignore")

    def test_rejuvenation_steps_non_negative(self):
        """n_rejuvenation_steps cannot be negative."""
        with pytest.raises(ValidationError):
            SMCConfig(n_rejuvenation_steps=-1)
