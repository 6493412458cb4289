"""Collapse identical reads of one sample into dereplicated records."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List

import numpy as np

from .exceptions import ValidationError
from .records import DereplicatedRecord, DereplicatedSample, Read

logger = logging.getLogger(__name__)

_VALID_BASES = frozenset("ACGT")


def dereplicate(reads: Iterable[Read], sample_id: str) -> DereplicatedSample:
    """Dereplicate reads into unique sequences.

    Each unique sequence keeps the number of reads that collapsed into it and
    the mean quality score at every position over those reads. Records come
    back sorted by decreasing abundance, ties in order of first appearance.

    Args:
        reads: Filtered reads of one sample and one read direction
        sample_id: Sample identifier

    Returns:
        DereplicatedSample with a read map linking each input read to its record

    Raises:
        ValidationError: If a read holds a base outside ACGT or there are no reads
    """
    first_seen: Dict[str, int] = {}
    counts: List[int] = []
    quality_sums: List[np.ndarray] = []
    read_to_unique: List[int] = []

    for read in reads:
        seq = read.sequence
        idx = first_seen.get(seq)
        if idx is None:
            if not _VALID_BASES.issuperset(seq):
                raise ValidationError(
                    f"read {read.read_id!r} in sample {sample_id!r} contains bases outside ACGT",
                    {"sample_id": sample_id, "read_id": read.read_id},
                )
            idx = len(counts)
            first_seen[seq] = idx
            counts.append(0)
            quality_sums.append(np.zeros(len(seq), dtype=float))
        counts[idx] += 1
        quality_sums[idx] += read.qualities
        read_to_unique.append(idx)

    if not counts:
        raise ValidationError(f"sample {sample_id!r} has no reads to dereplicate")

    sequences = list(first_seen)
    # stable sort keeps first-appearance order among equal abundances
    order = sorted(range(len(counts)), key=lambda i: -counts[i])
    rank = np.empty(len(order), dtype=np.int64)
    rank[order] = np.arange(len(order))

    records = [
        DereplicatedRecord(
            sequence=sequences[i],
            abundance=counts[i],
            quality=quality_sums[i] / counts[i],
        )
        for i in order
    ]
    read_map = rank[np.asarray(read_to_unique, dtype=np.int64)]

    logger.debug(
        f"Sample {sample_id}: {len(read_to_unique)} reads -> {len(records)} unique sequences"
    )
    return DereplicatedSample(sample_id=sample_id, records=records, read_map=read_map)
