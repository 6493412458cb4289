"""Samples x sequence-variants abundance table."""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, Iterable, Iterator, List, Sequence, Tuple

import numpy as np
import pandas as pd

from .exceptions import ValidationError
from .records import MergedContig


def _canonical_order(frame: pd.DataFrame) -> pd.DataFrame:
    """Rows by sample id; columns by decreasing total, then sequence."""
    frame = frame.sort_index(axis=0)
    totals = frame.sum(axis=0)
    columns = sorted(frame.columns, key=lambda seq: (-int(totals[seq]), seq))
    return frame.loc[:, columns]


class SequenceTable:
    """Abundance of every sequence variant in every sample.

    Rows are samples, columns are sequences. The column set is fixed once the
    table is built; operations that drop columns return a new table.
    """

    def __init__(self, frame: pd.DataFrame):
        if frame.index.has_duplicates:
            raise ValidationError("sequence table has duplicate sample identifiers")
        if frame.columns.has_duplicates:
            raise ValidationError("sequence table has duplicate sequences")
        values = frame.to_numpy()
        if values.size and (np.any(values < 0) or np.any(np.mod(values, 1) != 0)):
            raise ValidationError("abundances must be non-negative integers")
        frame = frame.astype(np.int64)
        frame.index = frame.index.astype(str)
        frame.index.name = "sample_id"
        frame.columns.name = "sequence"
        self._frame = _canonical_order(frame)

    @property
    def samples(self) -> List[str]:
        return list(self._frame.index)

    @property
    def sequences(self) -> List[str]:
        return list(self._frame.columns)

    @property
    def shape(self) -> Tuple[int, int]:
        return self._frame.shape

    def abundance(self, sample_id: str, sequence: str) -> int:
        if sequence not in self._frame.columns:
            return 0
        return int(self._frame.at[sample_id, sequence])

    def sample_totals(self) -> pd.Series:
        return self._frame.sum(axis=1)

    def sequence_totals(self) -> pd.Series:
        return self._frame.sum(axis=0)

    def sequence_lengths(self) -> pd.Series:
        """Number of sequences of each length."""
        return pd.Series([len(s) for s in self.sequences], dtype=np.int64).value_counts().sort_index()

    def to_frame(self) -> pd.DataFrame:
        return self._frame.copy()

    def to_long(self) -> pd.DataFrame:
        """Non-zero entries as ``sample_id, sequence, abundance`` rows."""
        long = self._frame.stack().rename("abundance").reset_index()
        long = long[long["abundance"] > 0]
        return long.reset_index(drop=True)

    @classmethod
    def from_long(cls, frame: pd.DataFrame) -> "SequenceTable":
        wide = frame.pivot_table(
            index="sample_id", columns="sequence", values="abundance", aggfunc="sum", fill_value=0
        )
        return cls(wide.astype(np.int64))

    def drop_sequences(self, sequences: Iterable[str]) -> "SequenceTable":
        return SequenceTable(self._frame.drop(columns=list(sequences)))

    def with_values(self, frame: pd.DataFrame) -> "SequenceTable":
        """A table with the same shape but new abundances, zero columns dropped."""
        kept = frame.loc[:, frame.sum(axis=0) > 0]
        return SequenceTable(kept)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SequenceTable):
            return NotImplemented
        return self._frame.equals(other._frame)

    def __repr__(self) -> str:
        return f"SequenceTable(samples={self.shape[0]}, sequences={self.shape[1]})"


def build_sequence_table(contigs: Iterable[Tuple[str, MergedContig]]) -> SequenceTable:
    """Aggregate per-sample contigs into a sequence table.

    Contigs of the same sample with the same sequence add up; every sample
    gets a zero for sequences it lacks. The result does not depend on the
    order of ``contigs``.

    Raises:
        ValidationError: If no contigs are supplied
    """
    counts: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
    seen_samples = set()
    for sample_id, contig in contigs:
        seen_samples.add(sample_id)
        if contig.accepted:
            counts[sample_id][contig.sequence] += contig.abundance

    if not seen_samples:
        raise ValidationError("cannot build a sequence table from empty input")

    frame = pd.DataFrame(
        {sample: dict(seqs) for sample, seqs in counts.items()}
    ).T
    frame = frame.reindex(sorted(seen_samples)).fillna(0).astype(np.int64)
    return SequenceTable(frame)


def table_from_samples(items: Sequence[Tuple[str, Sequence[MergedContig]]]) -> SequenceTable:
    """Build a table from ``(sample_id, contigs)`` groups, one per sample.

    Raises:
        ValidationError: On duplicate sample identifiers or empty input
    """
    sample_ids = [sample_id for sample_id, _ in items]
    duplicates = sorted({s for s in sample_ids if sample_ids.count(s) > 1})
    if duplicates:
        raise ValidationError(f"duplicate sample identifiers: {duplicates}")
    return build_sequence_table(_flatten(items))


def _flatten(items: Sequence[Tuple[str, Sequence[MergedContig]]]) -> Iterator[Tuple[str, MergedContig]]:
    for sample_id, contigs in items:
        if not contigs:
            yield sample_id, MergedContig("", 0, -1, -1, 0, 0, 0, accepted=False)
        for contig in contigs:
            yield sample_id, contig


def merge_sequence_tables(*tables: SequenceTable) -> SequenceTable:
    """Combine tables over disjoint sample sets, unioning their sequences.

    Raises:
        ValidationError: If a sample appears in more than one table
    """
    if not tables:
        raise ValidationError("no tables to merge")
    frames = [t.to_frame() for t in tables]
    all_samples = [s for f in frames for s in f.index]
    duplicates = sorted({s for s in all_samples if all_samples.count(s) > 1})
    if duplicates:
        raise ValidationError(f"samples present in more than one table: {duplicates}")
    merged = pd.concat(frames, axis=0).fillna(0).astype(np.int64)
    return SequenceTable(merged)
