"""
De novo chimera detection on a sequence table.

This module provides:
- Two-parent reconstruction of a candidate from more abundant sequences
- Per-sample flagging followed by a cross-sample consensus vote
- Pooled and per-sample removal variants
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .align import GAP, nw_align
from .config import ChimeraConfig
from .exceptions import ChimeraAmbiguous
from .records import ChimeraVerdict
from .table import SequenceTable

logger = logging.getLogger(__name__)

MAX_SHIFT = 16


@dataclass(frozen=True)
class BimeraMatch:
    """Best two-parent reconstruction of a candidate."""
    left_parent: str
    right_parent: str
    breakpoint: int
    n_mismatch: int


@lru_cache(maxsize=200_000)
def _mismatch_profile(query: str, parent: str) -> np.ndarray:
    """Per-query-position mismatch flags of ``query`` against ``parent``.

    A deletion in the query relative to the parent is charged to the query
    position that follows it (or the last position at the end).
    """
    if len(query) == len(parent):
        profile = np.frombuffer(query.encode(), dtype=np.uint8) != np.frombuffer(
            parent.encode(), dtype=np.uint8
        )
    else:
        q_aln, p_aln = nw_align(query, parent, band=MAX_SHIFT, ends_free=True)
        profile = np.zeros(len(query), dtype=bool)
        pos = 0
        pending = False
        for qb, pb in zip(q_aln, p_aln):
            if qb == GAP:
                pending = True
                continue
            profile[pos] = pending or qb != pb
            pending = False
            pos += 1
        if pending and len(query):
            profile[-1] = True
    profile = np.asarray(profile, dtype=bool)
    profile.flags.writeable = False
    return profile


def find_bimera(query: str, parents: Sequence[str], max_mismatch: int = 0) -> Optional[BimeraMatch]:
    """Reconstruct ``query`` from a left segment and a right segment.

    The two segments must come from different parents and together carry at
    most ``max_mismatch`` mismatches. A query within ``max_mismatch`` of a
    single parent is a variant of that parent, not a chimera.

    Returns:
        The best reconstruction, or None
    """
    if len(parents) < 2 or len(query) < 2:
        return None
    profiles = np.vstack([_mismatch_profile(query, p) for p in parents]).astype(np.int64)
    if profiles.sum(axis=1).min() <= max_mismatch:
        return None

    n_parents, length = profiles.shape
    zeros = np.zeros((n_parents, 1), dtype=np.int64)
    # left[p, i]: mismatches in query[:i]; right[p, i]: mismatches in query[i:]
    left = np.hstack([zeros, np.cumsum(profiles, axis=1)])
    right = left[:, -1:] - left
    breakpoints = np.arange(1, length)
    left = left[:, breakpoints]
    right = right[:, breakpoints]

    # The best pair of distinct parents at a breakpoint always uses the best
    # or second-best parent on each side.
    cols = np.arange(len(breakpoints))
    left_order = np.argsort(left, axis=0, kind="stable")[:2]
    right_order = np.argsort(right, axis=0, kind="stable")[:2]
    candidates = []
    for i, j in ((0, 0), (0, 1), (1, 0)):
        a = left_order[i]
        c = right_order[j]
        total = left[a, cols] + right[c, cols]
        total[a == c] = np.iinfo(np.int64).max // 2
        candidates.append((total, a, c))

    totals = np.stack([t for t, _, _ in candidates])
    # earliest breakpoint first, then candidate order
    b, k = divmod(int(np.argmin(totals.T)), len(candidates))
    best = int(totals[k, b])
    if best > max_mismatch:
        return None
    _, a, c = candidates[k]
    return BimeraMatch(
        left_parent=parents[int(a[b])],
        right_parent=parents[int(c[b])],
        breakpoint=int(breakpoints[b]),
        n_mismatch=best,
    )


def _flag_sample(
    abundances: pd.Series,
    config: ChimeraConfig,
) -> Dict[str, BimeraMatch]:
    """Flag chimeric sequences within one sample (or the pooled totals)."""
    present = abundances[abundances > 0].sort_values(ascending=False)
    flagged: Dict[str, BimeraMatch] = {}
    for query, count in present.items():
        threshold = max(config.min_fold_parent_over_abundance * count, config.min_parent_abundance)
        parents = [seq for seq, n in present.items() if n >= threshold and seq != query]
        if len(parents) < 2:
            continue
        max_mismatch = int(math.floor(config.mismatch_tolerance * len(query)))
        match = find_bimera(query, parents, max_mismatch)
        if match is not None:
            flagged[query] = match
    return flagged


def _collect_flags(
    frame: pd.DataFrame,
    config: ChimeraConfig,
) -> Dict[str, Dict[str, BimeraMatch]]:
    """Per-sample flags for the whole table; returns only once every sample is done."""
    if config.n_workers == 1:
        return {sample: _flag_sample(frame.loc[sample], config) for sample in frame.index}
    with ThreadPoolExecutor(max_workers=config.n_workers) as executor:
        futures = {
            sample: executor.submit(_flag_sample, frame.loc[sample], config)
            for sample in frame.index
        }
        return {sample: future.result() for sample, future in futures.items()}


def _evidence(
    sequence: str,
    frame: pd.DataFrame,
    flags: Dict[str, Dict[str, BimeraMatch]],
) -> Optional[BimeraMatch]:
    """The reconstruction from the flagged sample where the sequence is most abundant."""
    samples = [s for s in flags if sequence in flags[s]]
    if not samples:
        return None
    top = max(samples, key=lambda s: (frame.at[s, sequence], s))
    return flags[top][sequence]


def remove_chimeras(
    table: SequenceTable,
    config: Optional[ChimeraConfig] = None,
) -> Tuple[SequenceTable, List[ChimeraVerdict]]:
    """Remove chimeric sequences from a sequence table.

    With the ``consensus`` method every sample votes independently and a
    sequence is chimeric when at least ``min_sample_fraction`` of the samples
    containing it flag it, or when at most ``ignore_n_negatives`` of them do
    not. Sequences flagged somewhere but short of that quorum are ambiguous
    and retained unless ``ambiguous_policy`` is ``"error"``. Chimeric
    sequences are dropped together with their abundances.

    ``pooled`` runs one check on the column totals. ``per-sample`` zeroes a
    sequence only in the samples that flag it.

    Returns:
        ``(clean_table, verdicts)`` with one verdict per input sequence

    Raises:
        ChimeraAmbiguous: If ambiguous sequences exist and the policy is ``"error"``
    """
    cfg = config or ChimeraConfig()
    frame = table.to_frame()

    if cfg.method == "pooled":
        flags = {"__pooled__": _flag_sample(frame.sum(axis=0), cfg)}
        totals = frame.sum(axis=0).to_frame("__pooled__").T
        verdicts = _decide(frame.columns, totals, flags, cfg)
        clean = table.drop_sequences(v.sequence for v in verdicts if v.is_chimera)
    elif cfg.method == "per-sample":
        flags = _collect_flags(frame, cfg)
        values = frame.copy()
        for sample, flagged in flags.items():
            values.loc[sample, list(flagged)] = 0
        verdicts = []
        for seq in frame.columns:
            n_samples = int((frame[seq] > 0).sum())
            n_flagged = sum(seq in flags[s] for s in flags)
            match = _evidence(seq, frame, flags)
            status = "clean" if n_flagged == 0 else ("chimeric" if n_flagged == n_samples else "partial")
            verdicts.append(_verdict(seq, status == "chimeric", status, n_flagged, n_samples, match))
        clean = table.with_values(values)
    else:
        flags = _collect_flags(frame, cfg)
        verdicts = _decide(frame.columns, frame, flags, cfg)
        clean = table.drop_sequences(v.sequence for v in verdicts if v.is_chimera)

    n_chim = sum(v.is_chimera for v in verdicts)
    removed = int(table.sequence_totals().sum() - clean.sequence_totals().sum())
    total = int(table.sequence_totals().sum())
    logger.info(
        f"Chimera removal ({cfg.method}): {n_chim} of {len(verdicts)} sequences chimeric, "
        f"{removed} of {total} reads removed"
    )

    ambiguous = [v for v in verdicts if v.status == "ambiguous"]
    if ambiguous:
        logger.warning(f"{len(ambiguous)} sequences flagged below the sample quorum were retained")
        if cfg.ambiguous_policy == "error":
            raise ChimeraAmbiguous(
                f"{len(ambiguous)} sequences lack a cross-sample quorum",
                {"sequences": [v.sequence for v in ambiguous]},
            )
    return clean, verdicts


def _decide(
    sequences,
    frame: pd.DataFrame,
    flags: Dict[str, Dict[str, BimeraMatch]],
    cfg: ChimeraConfig,
) -> List[ChimeraVerdict]:
    verdicts = []
    for seq in sequences:
        n_samples = int((frame[seq] > 0).sum())
        n_flagged = sum(seq in flags[s] for s in flags)
        is_chimera = n_flagged > 0 and (
            n_flagged >= n_samples * cfg.min_sample_fraction
            or n_samples - n_flagged <= cfg.ignore_n_negatives
        )
        if is_chimera:
            status = "chimeric"
        elif n_flagged > 0:
            status = "ambiguous"
        else:
            status = "clean"
        verdicts.append(
            _verdict(seq, is_chimera, status, n_flagged, n_samples, _evidence(seq, frame, flags))
        )
    return verdicts


def _verdict(
    sequence: str,
    is_chimera: bool,
    status: str,
    n_flagged: int,
    n_samples: int,
    match: Optional[BimeraMatch],
) -> ChimeraVerdict:
    return ChimeraVerdict(
        sequence=sequence,
        is_chimera=is_chimera,
        status=status,
        n_flagged=n_flagged,
        n_samples=n_samples,
        left_parent=match.left_parent if match else None,
        right_parent=match.right_parent if match else None,
        breakpoint=match.breakpoint if match else None,
    )
