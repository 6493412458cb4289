"""
Sample inference: partition dereplicated reads into inferred true sequences.

This module provides:
- Error-generation probabilities (lambda) of records from partition centers
- Conditional Poisson abundance p-values
- Greedy partitioning with reassignment passes to a fixed point
- Per-sample parallel execution over a shared, read-only error model
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np
from scipy import stats

from .align import align_pair, encode
from .config import DenoiseConfig
from .error_model import ErrorModel
from .exceptions import ProcessingError, SampleProcessingError, ValidationError
from .records import DenoisedSample, DereplicatedSample, Partition

logger = logging.getLogger(__name__)


def abundance_pvalues(abundances: np.ndarray, expected: np.ndarray) -> np.ndarray:
    """P(X >= a | X >= 1) for X ~ Poisson(expected).

    Conditioning on X >= 1 reflects that only sequences observed at least once
    are ever tested. Singletons always get 1.0; a record with zero expected
    reads and abundance above one gets 0.0.
    """
    abundances = np.asarray(abundances, dtype=float)
    expected = np.asarray(expected, dtype=float)
    pvals = np.ones_like(expected)
    multi = abundances > 1
    if not multi.any():
        return pvals
    a = abundances[multi]
    e = expected[multi]
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        logp = stats.poisson.logsf(a - 1, e) - np.log(-np.expm1(-e))
        p = np.exp(np.minimum(logp, 0.0))
    p = np.where(e > 0, p, 0.0)
    pvals[multi] = np.nan_to_num(p, nan=0.0)
    return pvals


class _LambdaTable:
    """Lambdas and mismatch counts of every record against each center.

    Rows are partitions (arena order), columns are record indices.
    """

    def __init__(self, sample: DereplicatedSample, model: ErrorModel, config: DenoiseConfig):
        self.sample = sample
        self.band = config.band_size
        self.log_rates = model.log_rates()
        top = len(model.qualities) - 1
        self.qidx = [
            model.quality_index(record.quality) if config.use_quals
            else np.full(len(record), top, dtype=np.int64)
            for record in sample.records
        ]
        self.lam: List[np.ndarray] = []
        self.ndiff: List[np.ndarray] = []

    def add_center(self, center: int) -> None:
        center_seq = self.sample.records[center].sequence
        n = self.sample.n_records
        lam = np.empty(n)
        ndiff = np.empty(n, dtype=np.int64)
        for r, record in enumerate(self.sample.records):
            c_aln, q_aln = align_pair(center_seq, record.sequence, self.band)
            c = encode(c_aln)
            q = encode(q_aln)
            ndiff[r] = int(np.count_nonzero(c != q))
            keep = (c >= 0) & (q >= 0)
            positions = (np.cumsum(q >= 0) - 1)[keep]
            rows = c[keep].astype(np.int64) * 4 + q[keep]
            loglam = self.log_rates[rows, self.qidx[r][positions]].sum()
            lam[r] = np.exp(loglam)
        self.lam.append(lam)
        self.ndiff.append(ndiff)

    def matrix(self) -> np.ndarray:
        return np.vstack(self.lam)

    def mismatches(self) -> np.ndarray:
        return np.vstack(self.ndiff)


def _reassign(
    assignment: np.ndarray,
    centers: List[int],
    lam: np.ndarray,
    abundances: np.ndarray,
    max_shuffle: int,
) -> Tuple[np.ndarray, int]:
    """Move each record to the partition that best explains it.

    The score of partition ``k`` for record ``r`` is the expected number of
    error-derived copies, ``lam[k, r] * abundance(k)``. Centers never move.
    """
    n_parts = len(centers)
    center_idx = np.asarray(centers)
    for shuffle in range(1, max_shuffle + 1):
        part_abund = np.bincount(assignment, weights=abundances, minlength=n_parts)
        scores = lam * part_abund[:, None]
        proposed = np.argmax(scores, axis=0)
        proposed[center_idx] = np.arange(n_parts)
        if np.array_equal(proposed, assignment):
            return assignment, shuffle
        assignment = proposed
    return assignment, max_shuffle


def denoise_sample(
    sample: DereplicatedSample,
    model: ErrorModel,
    config: Optional[DenoiseConfig] = None,
    direction: str = "forward",
) -> DenoisedSample:
    """Partition one sample's records into inferred true sequences.

    Starts from a single partition seeded by the most abundant record. Each
    round reassigns records to the partition maximising their expected
    error-derived count, then promotes the record with the smallest
    Bonferroni-corrected abundance p-value to a new partition if it is
    significant at ``omega_a``. Stops when nothing is promoted.

    Args:
        sample: Dereplicated records of one sample and direction
        model: Fitted error model for that direction
        config: Denoising configuration
        direction: Read direction label carried into the result

    Returns:
        DenoisedSample whose partition abundances sum to the input abundance

    Raises:
        InvalidModelError: If the error model is malformed
        ValidationError: If the sample holds no records
    """
    cfg = config or DenoiseConfig()
    model.validate()
    n = sample.n_records
    if n == 0:
        raise ValidationError(f"sample {sample.sample_id!r} has no records to denoise")

    abundances = sample.abundances.astype(float)
    table = _LambdaTable(sample, model, cfg)
    centers = [0]
    births: List[Tuple[float, float]] = [(1.0, 0.0)]
    table.add_center(0)
    assignment = np.zeros(n, dtype=np.int64)

    while True:
        lam = table.matrix()
        assignment, n_shuffles = _reassign(assignment, centers, lam, abundances, cfg.max_shuffle)
        if n_shuffles == cfg.max_shuffle:
            logger.debug(f"Sample {sample.sample_id}: reassignment hit max_shuffle={cfg.max_shuffle}")

        part_abund = np.bincount(assignment, weights=abundances, minlength=len(centers))
        own = np.arange(n)
        expected = lam[assignment, own] * part_abund[assignment]
        pvals = abundance_pvalues(abundances, expected)
        pvals[centers] = 1.0

        with np.errstate(divide="ignore"):
            fold = np.where(expected > 0, abundances / expected, np.inf)
        distance = table.mismatches()[assignment, own]
        eligible = (distance >= cfg.min_hamming) & (fold >= cfg.min_fold)
        eligible[centers] = False
        if not eligible.any():
            break

        candidates = np.flatnonzero(eligible)
        best = int(candidates[np.argmin(pvals[candidates])])
        if pvals[best] * n >= cfg.omega_a:
            break
        if len(centers) >= cfg.max_partitions:
            logger.warning(
                f"Sample {sample.sample_id}: stopped at max_partitions={cfg.max_partitions}"
            )
            break

        centers.append(best)
        births.append((float(pvals[best]), float(expected[best])))
        assignment[best] = len(centers) - 1
        table.add_center(best)

    partitions = []
    for k, center in enumerate(centers):
        members = np.flatnonzero(assignment == k)
        partitions.append(
            _build_partition(sample, k, center, members, births[k])
        )

    logger.info(
        f"Sample {sample.sample_id} ({direction}): {n} unique sequences -> "
        f"{len(partitions)} partitions"
    )
    return DenoisedSample(
        sample_id=sample.sample_id,
        partitions=partitions,
        assignment=assignment,
        direction=direction,
    )


def _build_partition(
    sample: DereplicatedSample,
    index: int,
    center: int,
    members: np.ndarray,
    birth: Tuple[float, float],
) -> Partition:
    records = sample.records
    center_record = records[center]
    same_length = [m for m in members if len(records[m]) == len(center_record)]
    weights = np.array([records[m].abundance for m in same_length], dtype=float)
    profiles = np.vstack([records[m].quality for m in same_length])
    quality = np.average(profiles, axis=0, weights=weights)
    return Partition(
        index=index,
        center=int(center),
        sequence=center_record.sequence,
        abundance=int(sum(records[m].abundance for m in members)),
        members=[int(m) for m in members],
        n0=center_record.abundance,
        expected=birth[1],
        birth_pvalue=birth[0],
        quality=quality,
    )


def denoise_samples(
    samples: Mapping[str, DereplicatedSample],
    model: ErrorModel,
    config: Optional[DenoiseConfig] = None,
    direction: str = "forward",
    cancel: Optional[threading.Event] = None,
) -> Tuple[Dict[str, DenoisedSample], Dict[str, SampleProcessingError]]:
    """Denoise many samples against one shared error model.

    Samples run on a thread pool of ``config.n_workers`` workers (serially for
    one worker). A failing sample is logged, reported in the failures map and
    left out of the results; the others are unaffected. When ``cancel`` is
    set, samples that have not started are reported as cancelled.

    Returns:
        ``(results, failures)`` keyed by sample id, results in input order
    """
    cfg = config or DenoiseConfig()

    def run_one(sample_id: str, sample: DereplicatedSample) -> DenoisedSample:
        if cancel is not None and cancel.is_set():
            raise ProcessingError("cancelled before start")
        return denoise_sample(sample, model, cfg, direction)

    outcomes: Dict[str, object] = {}
    if cfg.n_workers == 1:
        for sample_id, sample in samples.items():
            try:
                outcomes[sample_id] = run_one(sample_id, sample)
            except Exception as exc:
                outcomes[sample_id] = exc
    else:
        with ThreadPoolExecutor(max_workers=cfg.n_workers) as executor:
            futures = {
                sample_id: executor.submit(run_one, sample_id, sample)
                for sample_id, sample in samples.items()
            }
            for sample_id, future in futures.items():
                try:
                    outcomes[sample_id] = future.result()
                except Exception as exc:
                    outcomes[sample_id] = exc

    results: Dict[str, DenoisedSample] = {}
    failures: Dict[str, SampleProcessingError] = {}
    for sample_id, outcome in outcomes.items():
        if isinstance(outcome, DenoisedSample):
            results[sample_id] = outcome
        else:
            failure = SampleProcessingError(sample_id, f"denoise ({direction})", outcome)
            logger.error(str(failure))
            failures[sample_id] = failure
    return results, failures
