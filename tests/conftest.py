"""
Test configuration and fixtures for precise-asv tests.
"""

import shutil
import tempfile
from pathlib import Path

import numpy as np
import pytest

from precise_asv.align import BASES, reverse_complement
from precise_asv.error_model import ErrorModel
from precise_asv.records import DereplicatedRecord, DereplicatedSample, Read


@pytest.fixture
def seed():
    """Fixed random seed for reproducible tests."""
    return 42


@pytest.fixture
def rng(seed):
    return np.random.default_rng(seed)


@pytest.fixture
def temp_dir():
    """Temporary directory for test outputs."""
    temp_dir = tempfile.mkdtemp()
    yield Path(temp_dir)
    shutil.rmtree(temp_dir)


@pytest.fixture
def flat_model():
    """Error model with every substitution at 1e-3, qualities 0-40."""
    return make_flat_model(1e-3)


@pytest.fixture
def amplicon(rng):
    """An 80 bp random amplicon."""
    return random_sequence(rng, 80)


# Utility functions for tests
def random_sequence(rng, length):
    return "".join(rng.choice(list(BASES), size=length))


def mutate(sequence, positions):
    """Substitute each listed position with the next base in ACGT order."""
    bases = list(sequence)
    for pos in positions:
        bases[pos] = BASES[(BASES.index(bases[pos]) + 1) % 4]
    return "".join(bases)


def make_flat_model(cross_rate, qualities=np.arange(41)):
    rates = np.full((16, len(qualities)), cross_rate)
    for s in range(4):
        rates[4 * s + s] = 1.0 - 3 * cross_rate
    return ErrorModel(rates=rates, qualities=qualities)


def make_sample(sample_id, records, quality=30.0):
    """DereplicatedSample from ``(sequence, abundance)`` pairs, most abundant first."""
    ordered = sorted(records, key=lambda r: -r[1])
    return DereplicatedSample(
        sample_id=sample_id,
        records=[
            DereplicatedRecord(seq, n, np.full(len(seq), quality))
            for seq, n in ordered
        ],
    )


def quality_ramp(length, low=20, span=15):
    return tuple(low + (i % span) for i in range(length))


def paired_reads(amplicon, n, read_length=50, reverse_override=None):
    """``n`` error-free read pairs from an amplicon.

    ``reverse_override`` replaces the reverse read sequence, for building
    pairs whose overlap disagrees.
    """
    fwd_seq = amplicon[:read_length]
    rev_seq = reverse_override or reverse_complement(amplicon)[:read_length]
    quals = quality_ramp(read_length)
    forward = [Read(fwd_seq, quals, f"f{i}") for i in range(n)]
    reverse = [Read(rev_seq, quals, f"r{i}") for i in range(n)]
    return forward, reverse
