"""
Error-rate model learned from observed substitution statistics.

This module provides:
- Transition counting of records against their partition centers
- Loess-style fitting of substitution rates as a function of quality
- Boundary clamping, monotonicity and simplex post-processing
- The self-consistent learn/denoise loop for a read-direction pool
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from functools import partial
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from statsmodels.regression.linear_model import WLS

from .align import BASES, align_pair, aligned_columns
from .config import ErrorModelConfig, PipelineConfig
from .exceptions import InsufficientDataError, InvalidModelError
from .logging_config import time_it
from .records import DenoisedSample, DereplicatedSample, Partition

logger = logging.getLogger(__name__)

TRANSITIONS = [f"{a}2{b}" for a in BASES for b in BASES]
SELF_ROWS = np.array([4 * s + s for s in range(4)])
CROSS_ROWS = np.array([i for i in range(16) if i not in SELF_ROWS])


def _read_only(array: np.ndarray, dtype) -> np.ndarray:
    out = np.array(array, dtype=dtype, copy=True)
    out.flags.writeable = False
    return out


@dataclass(frozen=True)
class TransitionCountMatrix:
    """Substitution counts per quality score.

    ``counts[4 * source + dest, k]`` is the number of observed bases with
    center base ``source`` read as ``dest`` at quality ``qualities[k]``.
    """
    counts: np.ndarray = field(repr=False)
    qualities: np.ndarray

    def __post_init__(self):
        counts = _read_only(self.counts, np.int64)
        qualities = _read_only(self.qualities, np.int64)
        if counts.ndim != 2 or counts.shape[0] != 16:
            raise ValueError("transition counts must have 16 rows")
        if counts.shape[1] != len(qualities):
            raise ValueError("one column per quality score is required")
        if np.any(counts < 0):
            raise ValueError("transition counts must be non-negative")
        if np.any(np.diff(qualities) <= 0):
            raise ValueError("quality scores must be strictly increasing")
        object.__setattr__(self, "counts", counts)
        object.__setattr__(self, "qualities", qualities)

    @classmethod
    def from_mapping(cls, mapping: Mapping[int, Sequence[int]]) -> "TransitionCountMatrix":
        """Build from ``{quality: 16 counts}`` in ``A2A, A2C, ... T2T`` order."""
        qualities = sorted(mapping)
        counts = np.array([list(mapping[q]) for q in qualities], dtype=np.int64).T
        return cls(counts=counts.reshape(16, len(qualities)), qualities=np.array(qualities))

    @property
    def total(self) -> int:
        return int(self.counts.sum())

    def totals_by_source(self) -> np.ndarray:
        """Observations per source base and quality, shape (4, n_qualities)."""
        return self.counts.reshape(4, 4, -1).sum(axis=1)

    def __add__(self, other: "TransitionCountMatrix") -> "TransitionCountMatrix":
        qualities = np.union1d(self.qualities, other.qualities)
        counts = np.zeros((16, len(qualities)), dtype=np.int64)
        counts[:, np.searchsorted(qualities, self.qualities)] += self.counts
        counts[:, np.searchsorted(qualities, other.qualities)] += other.counts
        return TransitionCountMatrix(counts=counts, qualities=qualities)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.counts, index=TRANSITIONS, columns=self.qualities)


@dataclass(frozen=True)
class ErrorModel:
    """Substitution probabilities per quality score.

    ``rates[4 * source + dest, k]`` is the probability that a true ``source``
    base is read as ``dest`` at quality ``qualities[k]``. Arrays are read-only
    so one fitted model can be shared by concurrent Denoiser workers.
    """
    rates: np.ndarray = field(repr=False)
    qualities: np.ndarray

    def __post_init__(self):
        rates = _read_only(self.rates, np.float64)
        qualities = _read_only(self.qualities, np.int64)
        if rates.shape != (16, len(qualities)):
            raise InvalidModelError(
                f"error model must have shape (16, {len(qualities)}), got {rates.shape}"
            )
        object.__setattr__(self, "rates", rates)
        object.__setattr__(self, "qualities", qualities)

    def validate(self, atol: float = 1e-8) -> None:
        """Check rates are finite probabilities and rows form a simplex.

        Raises:
            InvalidModelError: If any rate is non-finite, outside [0, 1], or a
                source base's four transition probabilities do not sum to 1
        """
        if not np.all(np.isfinite(self.rates)):
            raise InvalidModelError("error model contains non-finite rates")
        if np.any(self.rates < 0) or np.any(self.rates > 1):
            raise InvalidModelError("error model rates must lie in [0, 1]")
        row_sums = self.rates.reshape(4, 4, -1).sum(axis=1)
        worst = float(np.max(np.abs(row_sums - 1.0)))
        if worst > atol:
            raise InvalidModelError(
                "error model source rows must sum to 1",
                {"max_deviation": worst},
            )

    def quality_index(self, qualities) -> np.ndarray:
        """Column index for each (possibly fractional) quality score.

        Scores are rounded and mapped to the nearest modelled quality, the
        lower one on a tie, so binned models resolve to their closest bin.
        """
        q = np.rint(np.asarray(qualities, dtype=float)).astype(np.int64)
        last = len(self.qualities) - 1
        upper = np.clip(np.searchsorted(self.qualities, q, side="left"), 0, last)
        lower = np.clip(upper - 1, 0, last)
        use_lower = np.abs(q - self.qualities[lower]) <= np.abs(self.qualities[upper] - q)
        return np.where(use_lower, lower, upper)

    def rate(self, source: str, dest: str, quality: int) -> float:
        row = 4 * BASES.index(source) + BASES.index(dest)
        return float(self.rates[row, self.quality_index([quality])[0]])

    def log_rates(self) -> np.ndarray:
        with np.errstate(divide="ignore"):
            return np.log(self.rates)

    def to_frame(self) -> pd.DataFrame:
        """Long format: one row per (transition, quality)."""
        return pd.DataFrame(
            {
                "transition": np.repeat(TRANSITIONS, len(self.qualities)),
                "quality": np.tile(self.qualities, 16),
                "rate": self.rates.ravel(),
            }
        )

    @classmethod
    def from_frame(cls, frame: pd.DataFrame) -> "ErrorModel":
        wide = frame.pivot(index="transition", columns="quality", values="rate")
        missing = set(TRANSITIONS) - set(wide.index)
        if missing:
            raise InvalidModelError(f"error model frame lacks transitions: {sorted(missing)}")
        wide = wide.loc[TRANSITIONS].sort_index(axis=1)
        model = cls(rates=wide.to_numpy(dtype=float), qualities=wide.columns.to_numpy())
        model.validate()
        return model


def count_transitions(
    pairs: Iterable[Tuple[DereplicatedSample, DenoisedSample]],
    band: int = 16,
) -> TransitionCountMatrix:
    """Count substitutions of every record against its partition center.

    Quality columns run contiguously from 0 to the highest observed score so
    the fitted model covers every lower score by extrapolation.
    """
    pairs = list(pairs)
    max_q = 0
    for derep, _ in pairs:
        for record in derep.records:
            max_q = max(max_q, int(np.rint(record.quality.max())) if len(record) else 0)

    counts = np.zeros((16, max_q + 1), dtype=np.int64)
    for derep, denoised in pairs:
        for r, record in enumerate(derep.records):
            partition = denoised.partitions[int(denoised.assignment[r])]
            center_aln, query_aln = align_pair(partition.sequence, record.sequence, band)
            c, q, pos = aligned_columns(center_aln, query_aln)
            quals = np.clip(np.rint(record.quality[pos]).astype(np.int64), 0, max_q)
            np.add.at(counts, (c.astype(np.int64) * 4 + q, quals), record.abundance)

    return TransitionCountMatrix(counts=counts, qualities=np.arange(max_q + 1))


def _local_regression(
    x: np.ndarray,
    y: np.ndarray,
    weights: np.ndarray,
    at: np.ndarray,
    span: float,
) -> np.ndarray:
    """Weighted local quadratic regression evaluated at ``at``.

    Neighbourhoods hold ``ceil(span * n)`` points with tricube weights,
    multiplied by the observation weights. Targets outside the observed
    range, or whose neighbourhood has too little weight, give NaN.
    """
    n = len(x)
    k = max(1, min(n, int(math.ceil(span * n))))
    out = np.full(len(at), np.nan)
    for i, x0 in enumerate(at):
        if x0 < x.min() or x0 > x.max():
            continue
        dist = np.abs(x - x0)
        h = np.sort(dist)[k - 1]
        if h <= 0:
            h = 1.0
        h *= 1.0 + 1e-9
        tricube = np.clip(1 - (dist / h) ** 3, 0, None) ** 3
        w = tricube * weights
        use = w > 0
        if use.sum() < 3:
            continue
        dx = x[use] - x0
        design = np.column_stack([np.ones_like(dx), dx, dx ** 2])
        fit = WLS(y[use], design, weights=w[use]).fit()
        out[i] = fit.params[0]
    return out


def _extend_flat(pred: np.ndarray) -> np.ndarray:
    """Carry the nearest defined prediction outward over undefined extremes."""
    defined = np.flatnonzero(np.isfinite(pred))
    if defined.size == 0:
        raise InsufficientDataError("local regression is undefined at every quality score")
    out = pred.copy()
    first, last = defined[0], defined[-1]
    out[:first] = pred[first]
    out[last + 1:] = pred[last]
    interior = ~np.isfinite(out)
    if interior.any():
        positions = np.arange(len(out))
        out[interior] = np.interp(positions[interior], defined, pred[defined])
    return out


def clamp_rates(rates: np.ndarray, bounds: Tuple[float, float]) -> np.ndarray:
    """Clamp cross-transition rates into ``bounds``."""
    out = rates.copy()
    out[CROSS_ROWS] = np.clip(out[CROSS_ROWS], bounds[0], bounds[1])
    return out


def enforce_monotonicity(
    rates: np.ndarray,
    qualities: np.ndarray,
    reference_quality: int,
) -> np.ndarray:
    """Make cross-transition rates non-increasing above the reference quality.

    From the first score at or above ``reference_quality`` onward each rate
    becomes the running minimum, so no higher score carries more error than
    the reference score or any score between the two.
    """
    out = rates.copy()
    above = np.flatnonzero(qualities >= reference_quality)
    if above.size == 0:
        return out
    cols = slice(above[0], None)
    out[CROSS_ROWS, cols] = np.minimum.accumulate(out[CROSS_ROWS, cols], axis=1)
    return out


def fill_self_transitions(rates: np.ndarray) -> np.ndarray:
    """Set each self-transition to one minus the source's cross transitions."""
    out = rates.copy()
    for s in range(4):
        cross = [4 * s + d for d in range(4) if d != s]
        out[4 * s + s] = 1.0 - out[cross].sum(axis=0)
    return out


def fit_error_model(
    transitions: TransitionCountMatrix,
    config: Optional[ErrorModelConfig] = None,
) -> ErrorModel:
    """Fit an error model to transition counts.

    For each of the 12 cross transitions the Laplace-smoothed rate
    ``(errs + 1) / total`` is regressed on quality in log10 space, weighted by
    ``log10(total)``, and evaluated at every quality score of the input with
    flat extrapolation at the extremes. The curves then pass through
    clamping, monotonicity enforcement and self-transition filling.

    Args:
        transitions: Pooled transition counts for one read direction
        config: Error model configuration

    Returns:
        Validated, immutable ErrorModel

    Raises:
        InsufficientDataError: If a source base is observed at too few
            quality scores to regress
    """
    cfg = config or ErrorModelConfig()
    if transitions.total == 0:
        raise InsufficientDataError("transition matrix holds no observations")

    counts = transitions.counts.astype(float)
    quals = transitions.qualities.astype(float)
    totals = transitions.totals_by_source()
    rates = np.zeros((16, len(quals)))

    for s, source in enumerate(BASES):
        tot = totals[s].astype(float)
        observed = tot > 0
        n_bins = int(observed.sum())
        if n_bins < cfg.min_quality_bins:
            raise InsufficientDataError(
                f"source base {source} observed at {n_bins} quality scores, "
                f"{cfg.min_quality_bins} required",
                {"source": source, "observed_bins": n_bins},
            )
        weights = np.log10(tot[observed])
        for d in range(4):
            if d == s:
                continue
            errs = counts[4 * s + d, observed]
            rlogp = np.log10((errs + 1) / tot[observed])
            pred = _local_regression(quals[observed], rlogp, weights, quals, cfg.span)
            try:
                pred = _extend_flat(pred)
            except InsufficientDataError as exc:
                raise InsufficientDataError(
                    f"cannot fit {TRANSITIONS[4 * s + d]}: {exc}",
                    {"transition": TRANSITIONS[4 * s + d]},
                ) from exc
            rates[4 * s + d] = 10.0 ** pred

    steps: List[Tuple[str, Callable[[np.ndarray], np.ndarray]]] = [
        ("clamp", partial(clamp_rates, bounds=cfg.error_rate_bounds)),
        (
            "monotonicity",
            partial(
                enforce_monotonicity,
                qualities=transitions.qualities,
                reference_quality=cfg.monotonicity_reference_quality,
            ),
        ),
        ("self_transitions", fill_self_transitions),
    ]
    for name, step in steps:
        rates = step(rates)
        logger.debug(f"error model post-processing step '{name}' applied")

    model = ErrorModel(rates=rates, qualities=transitions.qualities)
    model.validate()
    return model


def _seed_only(sample: DereplicatedSample, direction: str) -> DenoisedSample:
    """Everything in one partition around the most abundant record."""
    partition = Partition(
        index=0,
        center=0,
        sequence=sample.records[0].sequence,
        abundance=sample.total_abundance,
        members=list(range(sample.n_records)),
        n0=sample.records[0].abundance,
    )
    return DenoisedSample(
        sample_id=sample.sample_id,
        partitions=[partition],
        assignment=np.zeros(sample.n_records, dtype=np.int64),
        direction=direction,
    )


@time_it("error model learning")
def learn_errors(
    samples: Sequence[DereplicatedSample],
    config: Optional[PipelineConfig] = None,
    direction: str = "forward",
) -> Tuple[ErrorModel, List[Dict[str, float]]]:
    """Learn an error model for one read-direction pool by self-consistency.

    The first round treats every sample as a single partition, the most
    permissive explanation of the data. Each later round denoises all samples
    with the current model, recounts transitions and refits, until the
    largest change in any cross-transition rate falls below
    ``convergence_tol`` or ``max_rounds`` is reached.

    Returns:
        The final model and a per-round trace of ``{"round", "max_change"}``
    """
    from .denoise import denoise_samples

    cfg = config or PipelineConfig()
    if not samples:
        raise InsufficientDataError("no samples supplied for error learning")

    denoised = [_seed_only(sample, direction) for sample in samples]
    model: Optional[ErrorModel] = None
    trace: List[Dict[str, float]] = []

    for round_no in range(1, cfg.error_model.max_rounds + 1):
        transitions = count_transitions(zip(samples, denoised), band=cfg.denoise.band_size)
        new_model = fit_error_model(transitions, cfg.error_model)
        if model is None or not np.array_equal(model.qualities, new_model.qualities):
            change = float("inf")
        else:
            change = float(
                np.max(np.abs(new_model.rates[CROSS_ROWS] - model.rates[CROSS_ROWS]))
            )
        trace.append({"round": round_no, "max_change": change})
        logger.info(f"Error learning round {round_no}: max rate change {change:.3g}")
        model = new_model
        if change < cfg.error_model.convergence_tol:
            break
        if round_no == cfg.error_model.max_rounds:
            logger.warning(
                f"Error learning did not converge within {cfg.error_model.max_rounds} rounds"
            )
            break
        results, failures = denoise_samples(
            {sample.sample_id: sample for sample in samples}, model, cfg.denoise, direction=direction
        )
        if failures:
            logger.warning(f"{len(failures)} samples failed during error learning and were skipped")
        pairs = [(s, results[s.sample_id]) for s in samples if s.sample_id in results]
        samples = [s for s, _ in pairs]
        denoised = [d for _, d in pairs]
        if not samples:
            raise InsufficientDataError("every sample failed during error learning")

    return model, trace
