"""Paired-end merging of denoised forward and reverse partitions."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .align import encode, reverse_complement
from .config import MergeConfig
from .exceptions import MergeRejected, ValidationError
from .records import DenoisedSample, DereplicatedSample, MergedContig, Partition

logger = logging.getLogger(__name__)

CONCAT_SPACER = "N" * 10

# overlap scoring, matches the alignment scores used elsewhere
_MATCH_SCORE = 5
_MISMATCH_SCORE = -4


def merge_pair(
    forward: str,
    reverse: str,
    forward_quality: Optional[np.ndarray] = None,
    reverse_quality: Optional[np.ndarray] = None,
    min_overlap: int = 12,
    mismatch_tolerance: float = 0.0,
    trim_overhang: bool = False,
) -> Tuple[str, int, int, int]:
    """Merge a forward sequence with the reverse complement of its mate.

    Every placement of the reverse complement with at least ``min_overlap``
    overlapping bases is scored (+5 per match, -4 per mismatch) and the best
    placement kept, longest overlap on ties. Overlap bases that disagree take
    the base with the higher quality; the forward base wins ties or when no
    qualities are given.

    Returns:
        ``(sequence, overlap, n_match, n_mismatch)``

    Raises:
        MergeRejected: If no placement reaches ``min_overlap`` or the best one
            has a mismatch fraction above ``mismatch_tolerance``
    """
    rc = reverse_complement(reverse)
    lf, lr = len(forward), len(rc)
    if min(lf, lr) < min_overlap:
        raise MergeRejected(
            f"reads shorter than min_overlap={min_overlap}",
            {"forward_length": lf, "reverse_length": lr},
        )

    f_codes = encode(forward)
    r_codes = encode(rc)
    best = None
    # o is where the reverse complement starts in forward coordinates
    for o in range(-(lr - min_overlap), lf - min_overlap + 1):
        f_lo, f_hi = max(0, o), min(lf, o + lr)
        overlap = f_hi - f_lo
        if overlap < min_overlap:
            continue
        matches = int(np.count_nonzero(f_codes[f_lo:f_hi] == r_codes[f_lo - o:f_hi - o]))
        score = _MATCH_SCORE * matches + _MISMATCH_SCORE * (overlap - matches)
        key = (score, overlap)
        if best is None or key > best[0]:
            best = (key, o, overlap, matches)

    _, o, overlap, n_match = best
    n_mismatch = overlap - n_match

    if forward_quality is None:
        fq = np.full(lf, np.inf)
    else:
        fq = np.asarray(forward_quality, dtype=float)
    if reverse_quality is None:
        rq = np.zeros(lr)
    else:
        rq = np.asarray(reverse_quality, dtype=float)[::-1]

    if trim_overhang:
        start, end = 0, o + lr
    else:
        start, end = min(0, o), max(lf, o + lr)
    bases = []
    for p in range(start, end):
        in_f = 0 <= p < lf
        in_r = o <= p < o + lr
        if in_f and in_r:
            fb, rb = forward[p], rc[p - o]
            bases.append(fb if fb == rb or fq[p] >= rq[p - o] else rb)
        elif in_f:
            bases.append(forward[p])
        elif in_r:
            bases.append(rc[p - o])
    sequence = "".join(bases)

    if n_mismatch > mismatch_tolerance * overlap:
        raise MergeRejected(
            f"overlap of {overlap} bases has {n_mismatch} mismatches",
            {"overlap": overlap, "n_match": n_match, "n_mismatch": n_mismatch, "sequence": sequence},
        )
    return sequence, overlap, n_match, n_mismatch


def pair_partitions(
    forward: DenoisedSample,
    reverse: DenoisedSample,
    forward_derep: DereplicatedSample,
    reverse_derep: DereplicatedSample,
) -> List[Tuple[int, int, int]]:
    """Pair forward and reverse partitions through the reads they share.

    Read ``i`` of the forward pool and read ``i`` of the reverse pool are the
    two ends of one physical fragment, so following both read maps gives the
    partition pair each fragment belongs to.

    Returns:
        ``(forward_index, reverse_index, n_read_pairs)`` sorted by decreasing count
    """
    if forward_derep.read_map is None or reverse_derep.read_map is None:
        raise ValidationError("read maps are required to pair partitions")
    if len(forward_derep.read_map) != len(reverse_derep.read_map):
        raise ValidationError(
            f"sample {forward.sample_id!r}: forward and reverse read counts differ",
            {
                "forward_reads": len(forward_derep.read_map),
                "reverse_reads": len(reverse_derep.read_map),
            },
        )
    fwd_part = forward.assignment[forward_derep.read_map]
    rev_part = reverse.assignment[reverse_derep.read_map]
    combos, counts = np.unique(np.stack([fwd_part, rev_part]), axis=1, return_counts=True)
    order = np.lexsort((combos[1], combos[0], -counts))
    return [(int(combos[0, k]), int(combos[1, k]), int(counts[k])) for k in order]


def merge_pairs(
    forward: Sequence[Partition],
    reverse: Sequence[Partition],
    sample_id: str,
    config: Optional[MergeConfig] = None,
    pairing: Optional[Sequence[Tuple[int, int, int]]] = None,
    return_rejects: bool = False,
) -> List[MergedContig]:
    """Merge paired forward and reverse partitions of one sample.

    Args:
        forward: Forward partitions
        reverse: Reverse partitions
        sample_id: Sample identifier, for logging
        config: Merge configuration
        pairing: ``(forward_index, reverse_index, n_read_pairs)`` triples; by
            default ``forward[i]`` pairs with ``reverse[i]``
        return_rejects: Keep rejected pairs with ``accepted=False``

    Returns:
        Merged contigs; abundance is the smaller of the two partition
        abundances, further capped by the shared read-pair count when known
    """
    cfg = config or MergeConfig()
    if pairing is None:
        if len(forward) != len(reverse):
            raise ValidationError(
                f"sample {sample_id!r}: {len(forward)} forward vs {len(reverse)} reverse partitions; "
                "an explicit pairing is required"
            )
        pairing = [(i, i, None) for i in range(len(forward))]

    contigs: List[MergedContig] = []
    n_rejected = 0
    for i, j, n_pairs in pairing:
        fwd, rev = forward[i], reverse[j]
        abundance = min(fwd.abundance, rev.abundance)
        if n_pairs is not None:
            abundance = min(abundance, n_pairs)

        if cfg.just_concatenate:
            contigs.append(
                MergedContig(
                    sequence=fwd.sequence + CONCAT_SPACER + reverse_complement(rev.sequence),
                    abundance=abundance,
                    forward=i,
                    reverse=j,
                    overlap=0,
                    n_match=0,
                    n_mismatch=0,
                )
            )
            continue

        try:
            sequence, overlap, n_match, n_mismatch = merge_pair(
                fwd.sequence,
                rev.sequence,
                fwd.quality,
                rev.quality,
                min_overlap=cfg.min_overlap,
                mismatch_tolerance=cfg.mismatch_tolerance,
                trim_overhang=cfg.trim_overhang,
            )
        except MergeRejected as exc:
            n_rejected += 1
            logger.debug(f"Sample {sample_id}: pair ({i}, {j}) rejected: {exc}")
            if return_rejects:
                contigs.append(
                    MergedContig(
                        sequence=exc.details.get("sequence", ""),
                        abundance=abundance,
                        forward=i,
                        reverse=j,
                        overlap=exc.details.get("overlap", 0),
                        n_match=exc.details.get("n_match", 0),
                        n_mismatch=exc.details.get("n_mismatch", 0),
                        accepted=False,
                    )
                )
            continue

        contigs.append(
            MergedContig(
                sequence=sequence,
                abundance=abundance,
                forward=i,
                reverse=j,
                overlap=overlap,
                n_match=n_match,
                n_mismatch=n_mismatch,
            )
        )

    if n_rejected:
        logger.info(f"Sample {sample_id}: {n_rejected} of {len(pairing)} pairs failed to merge")
    return contigs
