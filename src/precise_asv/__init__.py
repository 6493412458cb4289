"""Precise ASV: exact amplicon sequence variant inference with a learned error model."""

from __future__ import annotations

__version__ = "0.1.0"

# Core inference
from .dereplicate import dereplicate
from .error_model import ErrorModel, TransitionCountMatrix, count_transitions, fit_error_model, learn_errors
from .denoise import denoise_sample, denoise_samples
from .merge import merge_pair, merge_pairs, pair_partitions
from .table import SequenceTable, build_sequence_table, merge_sequence_tables, table_from_samples
from .chimera import remove_chimeras
from .tracking import ReadTracker
from .pipeline import PipelineResult, run_pipeline

# Records
from .records import (
    ChimeraVerdict,
    DenoisedSample,
    DereplicatedRecord,
    DereplicatedSample,
    MergedContig,
    Partition,
    Read,
)

# Configuration and I/O
from .config import PipelineConfig, load_config, dump_config
from .io import PipelineIO, reads_from_frame

__all__ = [
    "__version__",
    # Core inference
    "dereplicate",
    "ErrorModel",
    "TransitionCountMatrix",
    "count_transitions",
    "fit_error_model",
    "learn_errors",
    "denoise_sample",
    "denoise_samples",
    "merge_pair",
    "merge_pairs",
    "pair_partitions",
    "SequenceTable",
    "build_sequence_table",
    "merge_sequence_tables",
    "table_from_samples",
    "remove_chimeras",
    "ReadTracker",
    "PipelineResult",
    "run_pipeline",
    # Records
    "ChimeraVerdict",
    "DenoisedSample",
    "DereplicatedRecord",
    "DereplicatedSample",
    "MergedContig",
    "Partition",
    "Read",
    # Configuration
    "PipelineConfig",
    "load_config",
    "dump_config",
    "PipelineIO",
    "reads_from_frame",
]
