"""Configuration management for the precise-asv pipeline."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Any, Literal, Self

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .exceptions import ConfigurationError


class FilterConfig(BaseModel):
    """Upstream filtering parameters, carried for provenance.

    Both fields are (forward, reverse) pairs. The core never filters reads
    itself; the values are recorded with every run so the table can be traced
    back to the trimming that produced its input.
    """

    max_expected_errors: tuple[float, float] = (2.0, 2.0)
    truncation_length: tuple[int, int] = (0, 0)

    @field_validator("max_expected_errors")
    @classmethod
    def validate_max_expected_errors(cls, v: tuple[float, float]) -> tuple[float, float]:
        if any(x < 0 for x in v):
            raise ConfigurationError("max_expected_errors must be non-negative")
        return v

    @field_validator("truncation_length")
    @classmethod
    def validate_truncation_length(cls, v: tuple[int, int]) -> tuple[int, int]:
        if any(x < 0 for x in v):
            raise ConfigurationError("truncation_length must be non-negative")
        return v


class ErrorModelConfig(BaseModel):
    """Configuration for error-rate model fitting."""

    min_error_rate: float = 1e-7
    max_error_rate: float = 0.25
    monotonicity_reference_quality: int = 30
    span: float = Field(0.75, gt=0, le=1)
    min_quality_bins: int = Field(3, ge=1)
    max_rounds: int = Field(10, ge=1)
    convergence_tol: float = Field(1e-5, gt=0)

    @model_validator(mode="after")
    def validate_error_rate_bounds(self) -> Self:
        if not 0 < self.min_error_rate < self.max_error_rate:
            raise ConfigurationError("error rate bounds must satisfy 0 < min < max")
        # three cross transitions per source base must leave room for the self rate
        if self.max_error_rate * 3 >= 1:
            raise ConfigurationError("max_error_rate must be below 1/3")
        return self

    @property
    def error_rate_bounds(self) -> tuple[float, float]:
        return self.min_error_rate, self.max_error_rate


class DenoiseConfig(BaseModel):
    """Configuration for sample inference."""

    omega_a: float = Field(1e-40, gt=0, lt=1, description="Significance threshold for new partitions")
    min_fold: float = Field(1.0, ge=0)
    min_hamming: int = Field(1, ge=1)
    max_shuffle: int = Field(10, ge=1)
    max_partitions: int = Field(1000, ge=1)
    use_quals: bool = True
    band_size: int = Field(16, ge=0)
    n_workers: int = Field(1, ge=1)


class MergeConfig(BaseModel):
    """Configuration for paired-end merging."""

    min_overlap: int = Field(12, ge=1)
    mismatch_tolerance: float = Field(0.0, ge=0, lt=1)
    trim_overhang: bool = False
    just_concatenate: bool = False


class ChimeraConfig(BaseModel):
    """Configuration for chimera removal."""

    method: Literal["consensus", "pooled", "per-sample"] = "consensus"
    min_fold_parent_over_abundance: float = Field(1.5, ge=1)
    min_parent_abundance: int = Field(2, ge=1)
    min_sample_fraction: float = Field(0.9, gt=0, le=1)
    ignore_n_negatives: int = Field(1, ge=0)
    mismatch_tolerance: float = Field(0.0, ge=0, lt=1)
    ambiguous_policy: Literal["retain", "error"] = "retain"
    n_workers: int = Field(1, ge=1)


class TrackingConfig(BaseModel):
    """Loss fractions above which a stage is reported as anomalous."""

    loss_warning_threshold: dict[str, float] = Field(
        default_factory=lambda: {
            "filtered": 0.5,
            "denoised_forward": 0.2,
            "denoised_reverse": 0.2,
            "merged": 0.5,
            "nonchim": 0.4,
        }
    )

    @field_validator("loss_warning_threshold")
    @classmethod
    def validate_thresholds(cls, v: dict[str, float]) -> dict[str, float]:
        if any(not 0 <= x <= 1 for x in v.values()):
            raise ConfigurationError("loss warning thresholds must be between 0 and 1")
        return v


class PipelineConfig(BaseModel):
    """Main pipeline configuration."""

    model_config = ConfigDict(validate_assignment=True)

    run_id: str = "asv_run"
    seed: int = 7
    filtering: FilterConfig = Field(default_factory=FilterConfig)
    error_model: ErrorModelConfig = Field(default_factory=ErrorModelConfig)
    denoise: DenoiseConfig = Field(default_factory=DenoiseConfig)
    merge: MergeConfig = Field(default_factory=MergeConfig)
    chimera: ChimeraConfig = Field(default_factory=ChimeraConfig)
    tracking: TrackingConfig = Field(default_factory=TrackingConfig)

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary."""
        return self.model_dump(mode="json")

    def config_hash(self) -> str:
        """Compute deterministic hash of configuration."""
        config_str = self.model_dump_json()
        return hashlib.sha256(config_str.encode()).hexdigest()[:16]


def load_config(path: str | Path) -> PipelineConfig:
    """Load configuration from YAML file."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")
    with open(path, "r") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Failed to parse {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration root must be a mapping: {path}")
    return PipelineConfig(**data)


def dump_config(config: PipelineConfig, path: str | Path) -> None:
    """Save configuration to YAML file."""
    with open(path, "w") as f:
        yaml.safe_dump(config.to_dict(), f, default_flow_style=False)
