"""
Tests for pipeline configuration loading and validation.
"""

import pytest
import yaml

from precise_asv.config import (
    ChimeraConfig,
    ErrorModelConfig,
    PipelineConfig,
    TrackingConfig,
    dump_config,
    load_config,
)
from precise_asv.exceptions import ConfigurationError


class TestPipelineConfig:
    """Test configuration defaults, hashing and round trips."""

    def test_defaults(self):
        config = PipelineConfig()
        assert config.error_model.error_rate_bounds == (1e-7, 0.25)
        assert config.error_model.monotonicity_reference_quality == 30
        assert config.denoise.omega_a == 1e-40
        assert config.merge.min_overlap == 12
        assert config.chimera.method == "consensus"
        assert config.chimera.ambiguous_policy == "retain"

    def test_config_hash_is_stable_and_sensitive(self):
        assert PipelineConfig().config_hash() == PipelineConfig().config_hash()
        changed = PipelineConfig(merge={"min_overlap": 20})
        assert changed.config_hash() != PipelineConfig().config_hash()
        assert len(changed.config_hash()) == 16

    def test_yaml_round_trip(self, temp_dir):
        config = PipelineConfig(
            run_id="round_trip",
            seed=11,
            filtering={"max_expected_errors": (2.0, 3.0), "truncation_length": (240, 160)},
            chimera={"method": "pooled", "min_sample_fraction": 0.8},
        )
        path = temp_dir / "config.yaml"
        dump_config(config, path)
        loaded = load_config(path)
        assert loaded == config
        assert loaded.config_hash() == config.config_hash()

    def test_load_missing_file(self, temp_dir):
        with pytest.raises(ConfigurationError):
            load_config(temp_dir / "missing.yaml")

    def test_load_non_mapping(self, temp_dir):
        path = temp_dir / "list.yaml"
        path.write_text(yaml.safe_dump([1, 2, 3]))
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_load_invalid_yaml(self, temp_dir):
        path = temp_dir / "broken.yaml"
        path.write_text("run_id: [unclosed\n")
        with pytest.raises(ConfigurationError):
            load_config(path)


class TestSectionValidation:
    """Test per-section validators."""

    def test_error_rate_bounds_order(self):
        with pytest.raises(ConfigurationError):
            ErrorModelConfig(min_error_rate=0.1, max_error_rate=0.01)

    def test_max_error_rate_leaves_room_for_self_transition(self):
        with pytest.raises(ConfigurationError):
            ErrorModelConfig(max_error_rate=0.4)

    def test_negative_filter_values(self):
        with pytest.raises(ConfigurationError):
            PipelineConfig(filtering={"max_expected_errors": (-1.0, 2.0)})

    def test_tracking_thresholds_are_fractions(self):
        with pytest.raises(ConfigurationError):
            TrackingConfig(loss_warning_threshold={"merged": 1.5})

    def test_unknown_chimera_method_rejected(self):
        with pytest.raises(Exception):
            ChimeraConfig(method="reference")
