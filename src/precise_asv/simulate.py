"""Synthetic amplicon communities and noisy paired-end reads."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple

import numpy as np

from .align import BASES, reverse_complement
from .records import Read

logger = logging.getLogger(__name__)


@dataclass
class SimulatedCommunity:
    """True amplicons and their read counts per sample.

    ``chimeras`` maps each synthetic chimera name to its (left, right)
    parent names.
    """
    amplicons: Dict[str, str]
    counts: Dict[str, Dict[str, int]]
    chimeras: Dict[str, Tuple[str, str]] = field(default_factory=dict)

    @property
    def samples(self) -> List[str]:
        return sorted(self.counts)


def random_amplicon(rng: np.random.Generator, length: int) -> str:
    return "".join(rng.choice(list(BASES), size=length))


def simulate_community(
    rng: np.random.Generator,
    n_variants: int = 3,
    amplicon_length: int = 150,
    n_samples: int = 2,
    depth: int = 300,
    chimera_fraction: float = 0.05,
) -> SimulatedCommunity:
    """Simulate unrelated amplicon variants with geometric abundances.

    When ``chimera_fraction`` is positive, a chimera joining the first half of
    the most abundant variant to the second half of the next one is added to
    every sample at that fraction of the depth.
    """
    amplicons = {f"asv_{i}": random_amplicon(rng, amplicon_length) for i in range(n_variants)}
    weights = 0.5 ** np.arange(n_variants)
    weights = weights / weights.sum()

    chimeras: Dict[str, Tuple[str, str]] = {}
    if chimera_fraction > 0 and n_variants >= 2:
        half = amplicon_length // 2
        amplicons["chimera_0_1"] = amplicons["asv_0"][:half] + amplicons["asv_1"][half:]
        chimeras["chimera_0_1"] = ("asv_0", "asv_1")

    counts: Dict[str, Dict[str, int]] = {}
    for s in range(n_samples):
        n_chimera = int(round(depth * chimera_fraction)) if chimeras else 0
        draws = rng.multinomial(depth - n_chimera, weights)
        sample_counts = {f"asv_{i}": int(n) for i, n in enumerate(draws) if n > 0}
        if n_chimera:
            sample_counts["chimera_0_1"] = n_chimera
        counts[f"sample_{s + 1}"] = sample_counts

    return SimulatedCommunity(amplicons=amplicons, counts=counts, chimeras=chimeras)


def quality_profile(rng: np.random.Generator, length: int, start: float = 38.0, drop: float = 10.0) -> np.ndarray:
    """Phred scores that decline along the read, with per-base jitter."""
    trend = start - drop * np.arange(length) / max(length - 1, 1)
    jitter = rng.normal(0.0, 2.0, size=length)
    return np.clip(np.rint(trend + jitter), 2, 40).astype(np.int64)


def add_errors(rng: np.random.Generator, sequence: str, qualities: np.ndarray) -> str:
    """Substitute bases with probability 10^(-q/10), uniformly to another base."""
    error_prob = 10.0 ** (-qualities / 10.0)
    hits = np.flatnonzero(rng.random(len(sequence)) < error_prob)
    if not len(hits):
        return sequence
    bases = list(sequence)
    for pos in hits:
        alternatives = [b for b in BASES if b != bases[pos]]
        bases[pos] = alternatives[rng.integers(len(alternatives))]
    return "".join(bases)


def simulate_paired_reads(
    community: SimulatedCommunity,
    rng: np.random.Generator,
    read_length: int = 100,
) -> Tuple[Dict[str, List[Read]], Dict[str, List[Read]]]:
    """Sequence every fragment of the community from both ends.

    The forward read is the start of the amplicon, the reverse read the start
    of its reverse complement. Read ``i`` of a sample's forward list and read
    ``i`` of its reverse list come from the same fragment.

    Returns:
        ``(forward_reads, reverse_reads)`` keyed by sample id
    """
    forward: Dict[str, List[Read]] = {}
    reverse: Dict[str, List[Read]] = {}
    for sample_id in community.samples:
        fragments: List[str] = []
        for name, n in sorted(community.counts[sample_id].items()):
            fragments.extend([community.amplicons[name]] * n)
        order = rng.permutation(len(fragments))

        fwd_reads, rev_reads = [], []
        for k, idx in enumerate(order):
            amplicon = fragments[idx]
            fq = quality_profile(rng, read_length)
            rq = quality_profile(rng, read_length, drop=15.0)
            fseq = add_errors(rng, amplicon[:read_length], fq)
            rseq = add_errors(rng, reverse_complement(amplicon)[:read_length], rq)
            read_id = f"{sample_id}:{k}"
            fwd_reads.append(Read(fseq, tuple(int(q) for q in fq), read_id))
            rev_reads.append(Read(rseq, tuple(int(q) for q in rq), read_id))
        forward[sample_id] = fwd_reads
        reverse[sample_id] = rev_reads
        logger.debug(f"Simulated {len(fragments)} read pairs for {sample_id}")
    return forward, reverse


def expected_table(community: SimulatedCommunity, exclude: Sequence[str] = ()) -> Dict[str, Dict[str, int]]:
    """True amplicon counts per sample, keyed by sequence."""
    return {
        sample_id: {
            community.amplicons[name]: n
            for name, n in counts.items()
            if name not in exclude
        }
        for sample_id, counts in community.counts.items()
    }
