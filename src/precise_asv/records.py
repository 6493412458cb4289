"""
Data structures shared by the denoising stages.

This module provides:
- Reads and dereplicated records (the core's input)
- Partitions and denoised samples (the Denoiser's output)
- Merged contigs and chimera verdicts
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np


@dataclass(frozen=True)
class Read:
    """A filtered sequencing read with per-base Phred scores."""
    sequence: str
    qualities: Tuple[int, ...]
    read_id: Optional[str] = None

    def __post_init__(self):
        if len(self.sequence) != len(self.qualities):
            raise ValueError(
                f"read {self.read_id!r}: {len(self.sequence)} bases but {len(self.qualities)} quality scores"
            )
        if any(q < 0 for q in self.qualities):
            raise ValueError(f"read {self.read_id!r}: quality scores must be non-negative")

    def __len__(self) -> int:
        return len(self.sequence)


@dataclass(frozen=True)
class DereplicatedRecord:
    """A unique sequence with its abundance and mean quality profile."""
    sequence: str
    abundance: int
    quality: np.ndarray = field(compare=False, repr=False)

    def __post_init__(self):
        if self.abundance < 1:
            raise ValueError("abundance must be a positive integer")
        if len(self.quality) != len(self.sequence):
            raise ValueError("quality profile must match sequence length")
        quality = np.asarray(self.quality, dtype=float)
        quality.flags.writeable = False
        object.__setattr__(self, "quality", quality)

    def __len__(self) -> int:
        return len(self.sequence)


@dataclass(frozen=True)
class DereplicatedSample:
    """All unique records of one sample and one read direction.

    ``records`` are sorted by decreasing abundance. ``read_map[i]`` is the
    index of the record that input read ``i`` collapsed into, which is what
    links forward and reverse reads of the same physical pair.
    """
    sample_id: str
    records: Tuple[DereplicatedRecord, ...]
    read_map: np.ndarray = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        object.__setattr__(self, "records", tuple(self.records))
        if self.read_map is not None:
            read_map = np.asarray(self.read_map, dtype=np.int64)
            read_map.flags.writeable = False
            object.__setattr__(self, "read_map", read_map)

    @property
    def n_records(self) -> int:
        return len(self.records)

    @property
    def total_abundance(self) -> int:
        return sum(record.abundance for record in self.records)

    @property
    def abundances(self) -> np.ndarray:
        return np.array([record.abundance for record in self.records], dtype=np.int64)


@dataclass
class Partition:
    """One inferred true sequence and the records assigned to it."""
    index: int
    center: int
    sequence: str
    abundance: int = 0
    members: List[int] = field(default_factory=list)
    n0: int = 0
    expected: float = 0.0
    birth_pvalue: float = 1.0
    quality: Optional[np.ndarray] = field(default=None, repr=False)

    @property
    def birth_fold(self) -> float:
        """Observed center abundance over the expected error-derived count."""
        if self.expected <= 0:
            return float("inf")
        return self.n0 / self.expected


@dataclass
class DenoisedSample:
    """Denoiser output for one sample and direction."""
    sample_id: str
    partitions: List[Partition]
    assignment: np.ndarray = field(repr=False)
    direction: str = "forward"

    @property
    def total_abundance(self) -> int:
        return sum(p.abundance for p in self.partitions)

    def sequences(self) -> dict:
        """Map of partition sequence to abundance."""
        return {p.sequence: p.abundance for p in self.partitions}


@dataclass(frozen=True)
class MergedContig:
    """A forward/reverse partition pair joined over their overlap."""
    sequence: str
    abundance: int
    forward: int
    reverse: int
    overlap: int
    n_match: int
    n_mismatch: int
    accepted: bool = True


@dataclass(frozen=True)
class ChimeraVerdict:
    """Outcome of the chimera check for one table column."""
    sequence: str
    is_chimera: bool
    status: str
    n_flagged: int
    n_samples: int
    left_parent: Optional[str] = None
    right_parent: Optional[str] = None
    breakpoint: Optional[int] = None
