"""Pairwise sequence comparison helpers for amplicon sequences."""

from __future__ import annotations

from typing import Tuple

import numpy as np

BASES = "ACGT"
GAP = "-"

# Needleman-Wunsch scores
MATCH = 5
MISMATCH = -4
GAP_PENALTY = -8

_CODES = np.full(256, -1, dtype=np.int8)
for _i, _b in enumerate(BASES):
    _CODES[ord(_b)] = _i

_COMPLEMENT = str.maketrans("ACGTN", "TGCAN")


def encode(sequence: str) -> np.ndarray:
    """Encode a sequence as base codes 0-3 (A, C, G, T); gaps and others are -1."""
    return _CODES[np.frombuffer(sequence.encode("ascii"), dtype=np.uint8)]


def reverse_complement(sequence: str) -> str:
    """Reverse complement of a DNA sequence."""
    return sequence.translate(_COMPLEMENT)[::-1]


def hamming(seq1: str, seq2: str) -> int:
    """Number of mismatching positions between equal-length sequences."""
    if len(seq1) != len(seq2):
        raise ValueError("hamming distance requires equal-length sequences")
    return sum(c1 != c2 for c1, c2 in zip(seq1, seq2))


def nw_align(
    seq1: str,
    seq2: str,
    band: int = 16,
    ends_free: bool = False,
    match: int = MATCH,
    mismatch: int = MISMATCH,
    gap: int = GAP_PENALTY,
) -> Tuple[str, str]:
    """Banded Needleman-Wunsch global alignment.

    Cells further than ``band`` from the diagonal (widened by the length
    difference) are never visited. With ``ends_free`` leading and trailing
    gaps cost nothing, which aligns sequences that only partially overlap.

    Returns:
        The two aligned strings, padded with ``-`` at gaps.
    """
    n, m = len(seq1), len(seq2)
    width = band + abs(n - m) if band >= 0 else max(n, m)
    neg_inf = np.iinfo(np.int64).min // 4

    score = np.full((n + 1, m + 1), neg_inf, dtype=np.int64)
    # 0 diagonal, 1 up (gap in seq2), 2 left (gap in seq1)
    trace = np.zeros((n + 1, m + 1), dtype=np.int8)

    score[0, 0] = 0
    for i in range(1, min(n, width) + 1):
        score[i, 0] = 0 if ends_free else i * gap
        trace[i, 0] = 1
    for j in range(1, min(m, width) + 1):
        score[0, j] = 0 if ends_free else j * gap
        trace[0, j] = 2

    for i in range(1, n + 1):
        lo = max(1, i - width)
        hi = min(m, i + width)
        a = seq1[i - 1]
        for j in range(lo, hi + 1):
            diag = score[i - 1, j - 1] + (match if a == seq2[j - 1] else mismatch)
            up_gap = 0 if (ends_free and j == m) else gap
            left_gap = 0 if (ends_free and i == n) else gap
            up = score[i - 1, j] + up_gap
            left = score[i, j - 1] + left_gap
            if diag >= up and diag >= left:
                score[i, j] = diag
                trace[i, j] = 0
            elif up >= left:
                score[i, j] = up
                trace[i, j] = 1
            else:
                score[i, j] = left
                trace[i, j] = 2

    out1, out2 = [], []
    i, j = n, m
    while i > 0 or j > 0:
        move = trace[i, j] if (i > 0 and j > 0) else (1 if i > 0 else 2)
        if move == 0:
            out1.append(seq1[i - 1])
            out2.append(seq2[j - 1])
            i -= 1
            j -= 1
        elif move == 1:
            out1.append(seq1[i - 1])
            out2.append(GAP)
            i -= 1
        else:
            out1.append(GAP)
            out2.append(seq2[j - 1])
            j -= 1
    return "".join(reversed(out1)), "".join(reversed(out2))


def align_pair(center: str, query: str, band: int = 16) -> Tuple[str, str]:
    """Align a query to a center; equal-length pairs are compared ungapped."""
    if len(center) == len(query):
        return center, query
    return nw_align(center, query, band=band)


def aligned_columns(center_aln: str, query_aln: str) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Base codes of gap-free alignment columns.

    Returns:
        ``(center_codes, query_codes, query_positions)`` where positions index
        into the ungapped query so per-position qualities can be looked up.
    """
    c = encode(center_aln)
    q = encode(query_aln)
    query_positions = np.cumsum(q >= 0) - 1
    keep = (c >= 0) & (q >= 0)
    return c[keep], q[keep], query_positions[keep]
