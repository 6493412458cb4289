"""Tabular interchange and artifact helpers."""

from __future__ import annotations

import json
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping

import pandas as pd

from .exceptions import ValidationError
from .records import ChimeraVerdict, DereplicatedSample, Read
from .schemas import CHIMERA_SCHEMA, DEREP_SCHEMA, READS_SCHEMA


ARTIFACT_FILENAMES = {
    "seqtab": "seqtab.parquet",
    "seqtab_nochim": "seqtab_nochim.parquet",
    "chimeras": "chimera_verdicts.parquet",
    "track": "track.parquet",
    "error_model_forward": "error_model_forward.parquet",
    "error_model_reverse": "error_model_reverse.parquet",
    "failures": "failures.json",
    "config": "config.json",
    "run_context": "run_context.json",
}


class PipelineIO:
    """Helper for reading/writing artifacts with deterministic paths."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def path(self, key: str) -> Path:
        if key not in ARTIFACT_FILENAMES:
            msg = f"unknown artifact key: {key}"
            raise KeyError(msg)
        return self.base_dir / ARTIFACT_FILENAMES[key]

    def write_parquet(self, key: str, df: pd.DataFrame) -> Path:
        path = self.path(key)
        df.to_parquet(path, index=False)
        return path

    def read_parquet(self, key: str) -> pd.DataFrame:
        return pd.read_parquet(self.path(key))

    def write_json(self, key: str, payload: dict[str, Any]) -> Path:
        path = self.path(key)
        path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        return path

    def read_json(self, key: str) -> dict[str, Any]:
        return json.loads(self.path(key).read_text(encoding="utf-8"))


def reads_from_frame(frame: pd.DataFrame) -> Dict[str, List[Read]]:
    """Group a long read table into per-sample read lists.

    The frame has one row per read with ``sample_id``, ``read_index``,
    ``sequence`` and ``qualities`` (a list of Phred scores). Reads come back
    ordered by ``read_index`` so forward and reverse tables pair up by
    position.
    """
    READS_SCHEMA.validate(frame)
    reads: Dict[str, List[Read]] = {}
    ordered = frame.sort_values(["sample_id", "read_index"], kind="mergesort")
    for sample_id, group in ordered.groupby("sample_id", sort=True):
        if group["read_index"].duplicated().any():
            raise ValidationError(f"sample {sample_id!r} has duplicate read indices")
        reads[str(sample_id)] = [
            Read(sequence=seq, qualities=tuple(int(q) for q in quals), read_id=f"{sample_id}:{idx}")
            for seq, quals, idx in zip(group["sequence"], group["qualities"], group["read_index"])
        ]
    return reads


def reads_to_frame(reads: Mapping[str, Iterable[Read]]) -> pd.DataFrame:
    rows = [
        {
            "sample_id": sample_id,
            "read_index": i,
            "sequence": read.sequence,
            "qualities": list(read.qualities),
        }
        for sample_id, sample_reads in reads.items()
        for i, read in enumerate(sample_reads)
    ]
    return pd.DataFrame(rows, columns=["sample_id", "read_index", "sequence", "qualities"])


def records_to_frame(samples: Mapping[str, DereplicatedSample]) -> pd.DataFrame:
    rows = [
        {
            "sample_id": sample_id,
            "record": r,
            "sequence": record.sequence,
            "abundance": record.abundance,
        }
        for sample_id, sample in samples.items()
        for r, record in enumerate(sample.records)
    ]
    frame = pd.DataFrame(rows, columns=["sample_id", "record", "sequence", "abundance"])
    DEREP_SCHEMA.validate(frame)
    return frame


def verdicts_to_frame(verdicts: Iterable[ChimeraVerdict]) -> pd.DataFrame:
    frame = pd.DataFrame([asdict(v) for v in verdicts])
    if frame.empty:
        frame = pd.DataFrame(columns=list(ChimeraVerdict.__dataclass_fields__))
    else:
        CHIMERA_SCHEMA.validate(frame)
    return frame
