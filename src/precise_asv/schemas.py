"""Schema validators for tabular interchange frames."""

from __future__ import annotations

from dataclasses import dataclass

import pandas as pd
import polars as pl

from .exceptions import ValidationError


@dataclass(frozen=True)
class Schema:
    name: str
    schema: pl.Schema

    def validate(self, frame: pd.DataFrame) -> None:
        missing = [col for col in list(self.schema) if col not in frame.columns]
        if missing:
            raise ValidationError(f"{self.name} frame is missing columns: {missing}")
        try:
            pl.from_pandas(frame[list(self.schema)]).cast(dict(self.schema))
        except Exception as exc:  # pragma: no cover - polars details vary
            msg = f"{self.name} schema validation failed: {exc}"
            raise ValidationError(msg) from exc


READS_SCHEMA = Schema(
    name="reads",
    schema=pl.Schema(
        {
            "sample_id": pl.Utf8,
            "read_index": pl.Int64,
            "sequence": pl.Utf8,
            "qualities": pl.List(pl.Int64),
        }
    ),
)

DEREP_SCHEMA = Schema(
    name="dereplicated_records",
    schema=pl.Schema(
        {
            "sample_id": pl.Utf8,
            "record": pl.Int64,
            "sequence": pl.Utf8,
            "abundance": pl.Int64,
        }
    ),
)

ERROR_MODEL_SCHEMA = Schema(
    name="error_model",
    schema=pl.Schema(
        {
            "transition": pl.Utf8,
            "quality": pl.Int64,
            "rate": pl.Float64,
        }
    ),
)

SEQTAB_LONG_SCHEMA = Schema(
    name="sequence_table",
    schema=pl.Schema(
        {
            "sample_id": pl.Utf8,
            "sequence": pl.Utf8,
            "abundance": pl.Int64,
        }
    ),
)

CHIMERA_SCHEMA = Schema(
    name="chimera_verdicts",
    schema=pl.Schema(
        {
            "sequence": pl.Utf8,
            "is_chimera": pl.Boolean,
            "status": pl.Utf8,
            "n_flagged": pl.Int64,
            "n_samples": pl.Int64,
        }
    ),
)

TRACK_SCHEMA = Schema(
    name="track",
    schema=pl.Schema(
        {
            "sample_id": pl.Utf8,
            "input": pl.Float64,
            "filtered": pl.Float64,
            "denoised_forward": pl.Float64,
            "denoised_reverse": pl.Float64,
            "merged": pl.Float64,
            "nonchim": pl.Float64,
        }
    ),
)
