"""
Tests for error model fitting and its invariants.
"""

import numpy as np
import pytest
from hypothesis import given, settings, strategies as st
from hypothesis.extra.numpy import arrays

from precise_asv.config import ErrorModelConfig, PipelineConfig
from precise_asv.error_model import (
    CROSS_ROWS,
    SELF_ROWS,
    TRANSITIONS,
    ErrorModel,
    TransitionCountMatrix,
    clamp_rates,
    count_transitions,
    enforce_monotonicity,
    fill_self_transitions,
    fit_error_model,
    learn_errors,
)
from precise_asv.exceptions import InsufficientDataError, InvalidModelError
from precise_asv.dereplicate import dereplicate
from precise_asv.records import DenoisedSample, Partition

from conftest import make_flat_model, make_sample, mutate, paired_reads, random_sequence


def synthetic_counts(qualities, rng, depth=10_000):
    """Counts whose total error rate per base falls with quality like 10^(-q/10)."""
    counts = np.zeros((16, len(qualities)), dtype=np.int64)
    for k, q in enumerate(qualities):
        p = 10 ** (-q / 10)
        for s in range(4):
            errs = rng.binomial(depth, p / 3, size=3)
            cross = [4 * s + d for d in range(4) if d != s]
            counts[cross, k] = errs
            counts[4 * s + s, k] = depth - errs.sum()
    return TransitionCountMatrix(counts=counts, qualities=np.asarray(qualities))


class TestTransitionCountMatrix:
    """Test transition count containers."""

    def test_from_mapping(self):
        matrix = TransitionCountMatrix.from_mapping({30: range(16), 20: [1] * 16})
        assert list(matrix.qualities) == [20, 30]
        assert matrix.counts[1, 1] == 1
        assert matrix.total == 16 + sum(range(16))

    def test_addition_unions_qualities(self):
        a = TransitionCountMatrix.from_mapping({10: [1] * 16})
        b = TransitionCountMatrix.from_mapping({10: [2] * 16, 20: [3] * 16})
        combined = a + b
        assert list(combined.qualities) == [10, 20]
        assert combined.counts[0, 0] == 3
        assert combined.counts[0, 1] == 3

    def test_rejects_negative_counts(self):
        with pytest.raises(ValueError):
            TransitionCountMatrix(counts=-np.ones((16, 2)), qualities=np.array([1, 2]))

    def test_count_transitions_against_center(self):
        center = "ACGTACGTAC"
        variant = mutate(center, [0])
        derep = make_sample("s1", [(center, 10), (variant, 2)], quality=30.0)
        from precise_asv.error_model import _seed_only

        matrix = count_transitions([(derep, _seed_only(derep, "forward"))])
        assert list(matrix.qualities) == list(range(31))
        a2c = TRANSITIONS.index("A2C")
        assert matrix.counts[a2c, 30] == 2
        assert matrix.total == 12 * len(center)


class TestFitErrorModel:
    """Test the fitted model invariants."""

    def setup_method(self):
        self.config = ErrorModelConfig()

    def test_fit_recovers_quality_trend(self, rng):
        matrix = synthetic_counts(np.arange(10, 41), rng, depth=200_000)
        model = fit_error_model(matrix, self.config)
        a2c = TRANSITIONS.index("A2C")
        low = model.rate("A", "C", 10)
        high = model.rate("A", "C", 40)
        assert low > high
        # three cross transitions share 10^(-q/10)
        assert low == pytest.approx(0.1 / 3, rel=0.5)
        assert model.rates[a2c].min() >= self.config.min_error_rate

    @given(
        counts=arrays(np.int64, (12, 8), elements=st.integers(min_value=0, max_value=500)),
        depth=st.integers(min_value=1_000, max_value=100_000),
        start=st.integers(min_value=15, max_value=35),
    )
    @settings(max_examples=40, deadline=None)
    def test_rows_sum_to_one_and_bounds_hold(self, counts, depth, start):
        full = np.zeros((16, 8), dtype=np.int64)
        full[CROSS_ROWS] = counts
        full[SELF_ROWS] = depth
        matrix = TransitionCountMatrix(counts=full, qualities=np.arange(start, start + 8))
        model = fit_error_model(matrix, self.config)

        row_sums = model.rates.reshape(4, 4, -1).sum(axis=1)
        np.testing.assert_allclose(row_sums, 1.0, atol=1e-9)
        cross = model.rates[CROSS_ROWS]
        assert np.all(cross >= self.config.min_error_rate)
        assert np.all(cross <= self.config.max_error_rate)

        above = model.qualities >= self.config.monotonicity_reference_quality
        if above.sum() > 1:
            assert np.all(np.diff(cross[:, above], axis=1) <= 0)

    def test_insufficient_quality_bins(self):
        counts = np.zeros((16, 5), dtype=np.int64)
        counts[SELF_ROWS, :2] = 1_000
        matrix = TransitionCountMatrix(counts=counts, qualities=np.arange(20, 25))
        with pytest.raises(InsufficientDataError):
            fit_error_model(matrix, self.config)

    def test_empty_matrix(self):
        matrix = TransitionCountMatrix(counts=np.zeros((16, 3)), qualities=np.array([1, 2, 3]))
        with pytest.raises(InsufficientDataError):
            fit_error_model(matrix)


class TestPostProcessing:
    """Test the clamping, monotonicity and simplex steps in isolation."""

    def test_clamp_only_touches_cross_rows(self):
        rates = np.full((16, 3), 0.9)
        out = clamp_rates(rates, (1e-7, 0.25))
        assert np.all(out[CROSS_ROWS] == 0.25)
        assert np.all(out[SELF_ROWS] == 0.9)

    def test_monotonicity_from_reference(self):
        rates = np.zeros((16, 5))
        rates[CROSS_ROWS] = [0.01, 0.02, 0.005, 0.008, 0.001]
        qualities = np.array([20, 25, 30, 35, 40])
        out = enforce_monotonicity(rates, qualities, reference_quality=30)
        np.testing.assert_allclose(out[CROSS_ROWS[0]], [0.01, 0.02, 0.005, 0.005, 0.001])

    def test_fill_self_transitions(self):
        rates = np.zeros((16, 2))
        rates[CROSS_ROWS] = 0.01
        out = fill_self_transitions(rates)
        np.testing.assert_allclose(out[SELF_ROWS], 0.97)


class TestErrorModel:
    """Test model validation and interchange."""

    def test_validate_accepts_flat_model(self, flat_model):
        flat_model.validate()

    def test_rows_not_summing_to_one(self):
        model = ErrorModel(rates=np.full((16, 3), 0.5), qualities=np.array([1, 2, 3]))
        with pytest.raises(InvalidModelError):
            model.validate()

    def test_non_finite_rates(self):
        rates = make_flat_model(1e-3).rates.copy()
        rates[1, 0] = np.nan
        with pytest.raises(InvalidModelError):
            ErrorModel(rates=rates, qualities=np.arange(41)).validate()

    def test_wrong_shape(self):
        with pytest.raises(InvalidModelError):
            ErrorModel(rates=np.zeros((4, 3)), qualities=np.array([1, 2, 3]))

    def test_model_is_immutable(self, flat_model):
        with pytest.raises(ValueError):
            flat_model.rates[0, 0] = 0.5

    def test_frame_round_trip(self, flat_model):
        restored = ErrorModel.from_frame(flat_model.to_frame())
        np.testing.assert_array_equal(restored.rates, flat_model.rates)
        np.testing.assert_array_equal(restored.qualities, flat_model.qualities)

    def test_quality_index_clips(self, flat_model):
        assert list(flat_model.quality_index([-3, 12.4, 12.6, 99])) == [0, 12, 13, 40]

    def test_quality_index_binned_model(self):
        binned = make_flat_model(1e-3, qualities=np.array([2, 11, 25, 37]))
        # Q30 is closest to the Q25 bin; 18 and 31 are ties resolved downward
        assert list(binned.quality_index([0, 2, 18, 30, 31, 32, 40])) == [0, 0, 1, 2, 2, 3, 3]

    def test_rate_lookup_on_binned_model(self):
        rates = make_flat_model(1e-3, qualities=np.array([2, 11, 25, 37])).rates.copy()
        rates[1] = [0.1, 0.01, 0.001, 0.0001]
        rates[0] = 1.0 - rates[1:4].sum(axis=0)
        model = ErrorModel(rates=rates, qualities=np.array([2, 11, 25, 37]))
        assert model.rate("A", "C", 30) == pytest.approx(0.001)
        assert model.rate("A", "C", 36) == pytest.approx(0.0001)


class TestLearnErrors:
    """Test the self-consistent learning loop."""

    def test_converges_on_error_free_reads(self, rng):
        samples = []
        for sample_id, n in (("s1", 100), ("s2", 50)):
            forward, _ = paired_reads(random_sequence(rng, 80), n)
            samples.append(dereplicate(forward, sample_id))

        model, trace = learn_errors(samples, PipelineConfig())
        model.validate()
        assert trace[-1]["max_change"] < PipelineConfig().error_model.convergence_tol
        assert len(trace) == 2
        assert np.all(model.rates[CROSS_ROWS] <= 0.01)

    def test_requires_samples(self):
        with pytest.raises(InsufficientDataError):
            learn_errors([])

    def test_first_round_fits_single_partition_counts(self, rng, monkeypatch):
        def no_denoising(*args, **kwargs):
            raise AssertionError("the final round must not denoise")

        monkeypatch.setattr("precise_asv.denoise.denoise_samples", no_denoising)
        samples = []
        for sample_id in ("s1", "s2"):
            seq = random_sequence(rng, 60)
            major, _ = paired_reads(seq, 60, read_length=60)
            minor, _ = paired_reads(mutate(seq, [5, 40]), 20, read_length=60)
            samples.append(dereplicate(major + minor, sample_id))
        config = PipelineConfig(error_model=ErrorModelConfig(max_rounds=1))

        model, trace = learn_errors(samples, config)

        assert trace == [{"round": 1, "max_change": float("inf")}]
        single = [
            (
                sample,
                DenoisedSample(
                    sample_id=sample.sample_id,
                    partitions=[
                        Partition(
                            index=0,
                            center=0,
                            sequence=sample.records[0].sequence,
                            abundance=sample.total_abundance,
                            members=list(range(sample.n_records)),
                        )
                    ],
                    assignment=np.zeros(sample.n_records, dtype=np.int64),
                ),
            )
            for sample in samples
        ]
        expected = fit_error_model(
            count_transitions(single, band=config.denoise.band_size), config.error_model
        )
        np.testing.assert_allclose(model.rates, expected.rates)
        assert not np.allclose(model.rates[CROSS_ROWS], config.error_model.max_error_rate / 3)
