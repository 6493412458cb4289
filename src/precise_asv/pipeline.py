"""
End-to-end amplicon sequence variant inference.

Runs dereplication, error learning, denoising, pair merging, table
construction and chimera removal over a batch of samples. A sample that
fails at any per-sample stage is logged, reported in
``PipelineResult.failures`` and left out of the tables; the remaining samples
are unaffected.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

import pandas as pd

from .chimera import remove_chimeras
from .config import PipelineConfig
from .denoise import denoise_samples
from .dereplicate import dereplicate
from .error_model import ErrorModel, learn_errors
from .exceptions import ProcessingError, SampleProcessingError, ValidationError
from .io import PipelineIO, verdicts_to_frame
from .logging_config import PerformanceLogger
from .merge import merge_pairs, pair_partitions
from .records import ChimeraVerdict, DereplicatedSample, MergedContig, Read
from .schemas import ERROR_MODEL_SCHEMA, SEQTAB_LONG_SCHEMA, TRACK_SCHEMA
from .table import SequenceTable, table_from_samples
from .tracking import ReadTracker

logger = logging.getLogger(__name__)

DIRECTIONS = ("forward", "reverse")


@dataclass
class PipelineResult:
    """Outputs of one pipeline run."""
    seqtab: SequenceTable
    seqtab_nochim: SequenceTable
    verdicts: List[ChimeraVerdict]
    tracker: ReadTracker
    error_models: Dict[str, ErrorModel]
    contigs: Dict[str, List[MergedContig]] = field(default_factory=dict)
    failures: Dict[str, SampleProcessingError] = field(default_factory=dict)
    traces: Dict[str, List[Dict[str, float]]] = field(default_factory=dict)
    timings: Dict[str, float] = field(default_factory=dict)

    def summary(self) -> Dict[str, Any]:
        return {
            "n_samples": self.seqtab_nochim.shape[0],
            "n_sequences": self.seqtab.shape[1],
            "n_sequences_nochim": self.seqtab_nochim.shape[1],
            "n_chimeras": sum(v.is_chimera for v in self.verdicts),
            "n_ambiguous": sum(v.status == "ambiguous" for v in self.verdicts),
            "failed_samples": sorted(self.failures),
        }


def _fail(failures: Dict[str, SampleProcessingError], sample_id: str, stage: str, exc: Exception) -> None:
    failure = exc if isinstance(exc, SampleProcessingError) else SampleProcessingError(sample_id, stage, exc)
    logger.error(str(failure))
    failures[sample_id] = failure


def _dereplicate_all(
    reads: Mapping[str, Sequence[Read]],
    direction: str,
    failures: Dict[str, SampleProcessingError],
) -> Dict[str, DereplicatedSample]:
    derep: Dict[str, DereplicatedSample] = {}
    for sample_id in sorted(reads):
        if sample_id in failures:
            continue
        try:
            derep[sample_id] = dereplicate(reads[sample_id], sample_id)
        except Exception as exc:
            _fail(failures, sample_id, f"dereplicate ({direction})", exc)
    return derep


def run_pipeline(
    forward_reads: Mapping[str, Sequence[Read]],
    reverse_reads: Mapping[str, Sequence[Read]],
    config: Optional[PipelineConfig] = None,
    error_models: Optional[Mapping[str, ErrorModel]] = None,
    input_counts: Optional[Mapping[str, int]] = None,
    cancel: Optional[threading.Event] = None,
) -> PipelineResult:
    """Infer sequence variants for a batch of paired-end samples.

    Args:
        forward_reads: Filtered forward reads per sample
        reverse_reads: Filtered reverse reads per sample, in the same pair order
        config: Pipeline configuration
        error_models: Pre-fitted models keyed by direction; missing directions
            are learned from the batch
        input_counts: Raw read counts before filtering, for the read tracker
        cancel: Event that stops denoising of samples not yet started

    Returns:
        PipelineResult

    Raises:
        ProcessingError: If no sample survives to the sequence table
        InsufficientDataError: If an error model cannot be learned
    """
    cfg = config or PipelineConfig()
    tracker = ReadTracker()
    failures: Dict[str, SampleProcessingError] = {}

    sample_ids = sorted(set(forward_reads) | set(reverse_reads))
    for sample_id in sample_ids:
        n_fwd = len(forward_reads.get(sample_id, ()))
        n_rev = len(reverse_reads.get(sample_id, ()))
        tracker.record(sample_id, "input", (input_counts or {}).get(sample_id, n_fwd))
        tracker.record(sample_id, "filtered", n_fwd)
        if sample_id not in forward_reads or sample_id not in reverse_reads or n_fwd != n_rev:
            _fail(
                failures,
                sample_id,
                "pairing",
                ValidationError(f"{n_fwd} forward reads but {n_rev} reverse reads"),
            )

    derep = {
        "forward": _dereplicate_all(forward_reads, "forward", failures),
        "reverse": _dereplicate_all(reverse_reads, "reverse", failures),
    }
    for direction in DIRECTIONS:
        derep[direction] = {s: d for s, d in derep[direction].items() if s not in failures}

    models: Dict[str, ErrorModel] = dict(error_models or {})
    traces: Dict[str, List[Dict[str, float]]] = {}
    timings: Dict[str, float] = {}
    for direction in DIRECTIONS:
        if direction not in models:
            models[direction], traces[direction] = learn_errors(
                list(derep[direction].values()), cfg, direction=direction
            )

    denoised = {}
    for direction in DIRECTIONS:
        with PerformanceLogger(logger, f"denoising ({direction})", timings):
            results, failed = denoise_samples(
                derep[direction], models[direction], cfg.denoise, direction=direction, cancel=cancel
            )
        for sample_id, failure in failed.items():
            _fail(failures, sample_id, failure.stage, failure)
        denoised[direction] = results
        tracker.record_many(
            f"denoised_{direction}",
            {s: d.total_abundance for s, d in results.items()},
        )

    contigs: Dict[str, List[MergedContig]] = {}
    with PerformanceLogger(logger, "pair merging", timings):
        for sample_id in sample_ids:
            if sample_id in failures:
                continue
            fwd = denoised["forward"].get(sample_id)
            rev = denoised["reverse"].get(sample_id)
            if fwd is None or rev is None:
                continue
            try:
                pairing = pair_partitions(
                    fwd, rev, derep["forward"][sample_id], derep["reverse"][sample_id]
                )
                contigs[sample_id] = merge_pairs(
                    fwd.partitions, rev.partitions, sample_id, cfg.merge, pairing=pairing
                )
            except Exception as exc:
                _fail(failures, sample_id, "merge", exc)
                continue
            tracker.record(sample_id, "merged", sum(c.abundance for c in contigs[sample_id] if c.accepted))

    surviving = [(s, contigs[s]) for s in sorted(contigs) if s not in failures]
    if not surviving:
        raise ProcessingError(
            "no sample survived to the sequence table",
            {"failures": {s: str(f) for s, f in failures.items()}},
        )

    seqtab = table_from_samples(surviving)
    with PerformanceLogger(logger, "chimera removal", timings):
        seqtab_nochim, verdicts = remove_chimeras(seqtab, cfg.chimera)
    tracker.record_many("nonchim", seqtab_nochim.sample_totals().to_dict())
    for sample_id in seqtab.samples:
        if sample_id not in seqtab_nochim.samples:
            tracker.record(sample_id, "nonchim", 0)
    tracker.warn_anomalies(cfg.tracking.loss_warning_threshold)

    if failures:
        logger.warning(f"{len(failures)} of {len(sample_ids)} samples failed: {sorted(failures)}")
    logger.info(
        f"Pipeline complete: {seqtab_nochim.shape[0]} samples, "
        f"{seqtab_nochim.shape[1]} sequence variants"
    )
    return PipelineResult(
        seqtab=seqtab,
        seqtab_nochim=seqtab_nochim,
        verdicts=verdicts,
        tracker=tracker,
        error_models=models,
        contigs=contigs,
        failures=failures,
        traces=traces,
        timings=timings,
    )


def write_artifacts(result: PipelineResult, io: PipelineIO, config: PipelineConfig) -> Dict[str, str]:
    """Persist a pipeline result; returns artifact key -> path."""
    seqtab = result.seqtab.to_long()
    nochim = result.seqtab_nochim.to_long()
    SEQTAB_LONG_SCHEMA.validate(seqtab)
    SEQTAB_LONG_SCHEMA.validate(nochim)
    track = result.tracker.to_frame().reset_index()
    TRACK_SCHEMA.validate(track)

    paths = {
        "seqtab": io.write_parquet("seqtab", seqtab),
        "seqtab_nochim": io.write_parquet("seqtab_nochim", nochim),
        "chimeras": io.write_parquet("chimeras", verdicts_to_frame(result.verdicts)),
        "track": io.write_parquet("track", track),
    }
    for direction, model in result.error_models.items():
        frame = model.to_frame()
        ERROR_MODEL_SCHEMA.validate(frame)
        paths[f"error_model_{direction}"] = io.write_parquet(f"error_model_{direction}", frame)

    paths["failures"] = io.write_json(
        "failures",
        {s: {"stage": f.stage, "error": str(f.cause)} for s, f in result.failures.items()},
    )
    paths["config"] = io.write_json("config", config.to_dict())
    paths["run_context"] = io.write_json(
        "run_context",
        {
            "run_id": config.run_id,
            "seed": config.seed,
            "config_hash": config.config_hash(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "summary": result.summary(),
            "error_learning": result.traces,
            "timings": result.timings,
            "pandas": pd.__version__,
        },
    )
    return {key: str(path) for key, path in paths.items()}
