"""
Tests for de novo chimera removal.
"""

import tracemalloc

import numpy as np
import pandas as pd
import pytest
from hypothesis import given, settings, strategies as st

from precise_asv.chimera import find_bimera, remove_chimeras
from precise_asv.config import ChimeraConfig
from precise_asv.exceptions import ChimeraAmbiguous
from precise_asv.table import SequenceTable

from conftest import mutate, random_sequence


def table_of(rows):
    return SequenceTable(pd.DataFrame(rows).T.fillna(0).astype(np.int64))


class TestFindBimera:
    """Test two-parent reconstruction."""

    def setup_method(self):
        rng = np.random.default_rng(8)
        self.a = random_sequence(rng, 60)
        self.b = random_sequence(rng, 60)
        self.chimera = self.a[:30] + self.b[30:]

    def test_exact_two_parent_chimera(self):
        match = find_bimera(self.chimera, [self.a, self.b])
        assert match is not None
        assert match.left_parent == self.a
        assert match.right_parent == self.b
        assert 0 < match.breakpoint < len(self.chimera)
        assert match.n_mismatch == 0

    def test_needs_two_parents(self):
        assert find_bimera(self.chimera, [self.a]) is None

    def test_unrelated_sequence(self):
        other = random_sequence(np.random.default_rng(9), 60)
        assert find_bimera(other, [self.a, self.b]) is None

    def test_close_variant_of_one_parent_is_not_chimeric(self):
        variant = mutate(self.a, [45])
        assert find_bimera(variant, [self.a, self.b], max_mismatch=1) is None

    def test_mismatch_allowance(self):
        noisy = mutate(self.chimera, [5])
        assert find_bimera(noisy, [self.a, self.b], max_mismatch=0) is None
        assert find_bimera(noisy, [self.a, self.b], max_mismatch=1) is not None

    @given(st.integers(min_value=0, max_value=2**32 - 1))
    @settings(max_examples=50, deadline=None)
    def test_matches_exhaustive_search(self, seed):
        rng = np.random.default_rng(seed)
        query = random_sequence(rng, 12)
        parents = list(dict.fromkeys(random_sequence(rng, 12) for _ in range(5)))
        flags = [np.array([q != p for q, p in zip(query, parent)]) for parent in parents]
        best = min(
            int(flags[a][:b].sum() + flags[c][b:].sum())
            for b in range(1, 12)
            for a in range(len(parents))
            for c in range(len(parents))
            if a != c
        )

        match = find_bimera(query, parents, max_mismatch=best)

        if min(int(f.sum()) for f in flags) <= best:
            assert match is None
        else:
            assert match.n_mismatch == best
            a, c = parents.index(match.left_parent), parents.index(match.right_parent)
            assert a != c
            b = match.breakpoint
            assert int(flags[a][:b].sum() + flags[c][b:].sum()) == best

    def test_many_parents_memory_is_linear(self):
        rng = np.random.default_rng(10)
        parents = [random_sequence(rng, 250) for _ in range(400)]
        chimera = parents[3][:120] + parents[250][120:]

        tracemalloc.start()
        try:
            match = find_bimera(chimera, parents, max_mismatch=2)
            _, peak = tracemalloc.get_traced_memory()
        finally:
            tracemalloc.stop()

        assert match.left_parent == parents[3]
        assert match.right_parent == parents[250]
        assert match.n_mismatch == 0
        assert peak < 20_000_000


class TestRemoveChimeras:
    """Test table-level chimera removal."""

    def setup_method(self):
        rng = np.random.default_rng(8)
        self.a = random_sequence(rng, 60)
        self.b = random_sequence(rng, 60)
        self.c = random_sequence(rng, 60)
        self.chimera = self.a[:30] + self.b[30:]

    def test_consensus_chimera_removed(self):
        table = table_of({
            "s1": {self.a: 100, self.b: 80, self.c: 30, self.chimera: 10},
            "s2": {self.a: 90, self.b: 60, self.chimera: 8},
        })
        clean, verdicts = remove_chimeras(table)

        assert self.chimera not in clean.sequences
        assert set(clean.sequences) == {self.a, self.b, self.c}
        by_seq = {v.sequence: v for v in verdicts}
        assert by_seq[self.chimera].is_chimera
        assert by_seq[self.chimera].status == "chimeric"
        assert by_seq[self.chimera].n_flagged == 2
        assert by_seq[self.chimera].left_parent == self.a
        assert by_seq[self.chimera].right_parent == self.b
        assert not by_seq[self.a].is_chimera
        assert clean.abundance("s1", self.a) == 100

    def test_idempotent_on_clean_table(self):
        table = table_of({
            "s1": {self.a: 100, self.b: 80, self.chimera: 10},
            "s2": {self.a: 90, self.b: 60, self.chimera: 8},
        })
        clean, _ = remove_chimeras(table)
        again, verdicts = remove_chimeras(clean)
        assert again == clean
        assert not any(v.is_chimera for v in verdicts)

    def test_parents_must_be_abundant(self):
        table = table_of({"s1": {self.a: 12, self.b: 12, self.chimera: 10}})
        clean, verdicts = remove_chimeras(table)
        assert self.chimera in clean.sequences
        assert all(v.status == "clean" for v in verdicts)

    def test_below_quorum_is_ambiguous_and_retained(self):
        table = table_of({
            "s1": {self.a: 100, self.b: 80, self.chimera: 10},
            "s2": {self.b: 60, self.chimera: 40},
            "s3": {self.b: 60, self.chimera: 40},
        })
        clean, verdicts = remove_chimeras(table)
        verdict = {v.sequence: v for v in verdicts}[self.chimera]
        assert verdict.status == "ambiguous"
        assert not verdict.is_chimera
        assert verdict.n_flagged == 1 and verdict.n_samples == 3
        assert self.chimera in clean.sequences

    def test_ambiguous_policy_error(self):
        table = table_of({
            "s1": {self.a: 100, self.b: 80, self.chimera: 10},
            "s2": {self.b: 60, self.chimera: 40},
            "s3": {self.b: 60, self.chimera: 40},
        })
        with pytest.raises(ChimeraAmbiguous) as exc_info:
            remove_chimeras(table, ChimeraConfig(ambiguous_policy="error"))
        assert exc_info.value.details["sequences"] == [self.chimera]

    def test_ignore_n_negatives(self):
        table = table_of({
            "s1": {self.a: 100, self.b: 80, self.chimera: 10},
            "s2": {self.b: 60, self.chimera: 40},
        })
        strict, _ = remove_chimeras(table, ChimeraConfig(ignore_n_negatives=0))
        lenient, _ = remove_chimeras(table, ChimeraConfig(ignore_n_negatives=1))
        assert self.chimera in strict.sequences
        assert self.chimera not in lenient.sequences

    def test_pooled_method(self):
        # ambiguous per sample, but the pooled totals have both parents
        table = table_of({
            "s1": {self.a: 100, self.b: 80, self.chimera: 10},
            "s2": {self.b: 60, self.chimera: 5},
            "s3": {self.b: 60, self.chimera: 5},
        })
        clean, verdicts = remove_chimeras(table, ChimeraConfig(method="pooled"))
        assert self.chimera not in clean.sequences
        assert {v.sequence: v for v in verdicts}[self.chimera].n_samples == 1

    def test_per_sample_method(self):
        table = table_of({
            "s1": {self.a: 100, self.b: 80, self.chimera: 10},
            "s2": {self.b: 60, self.chimera: 40},
        })
        clean, verdicts = remove_chimeras(table, ChimeraConfig(method="per-sample"))
        assert clean.abundance("s1", self.chimera) == 0
        assert clean.abundance("s2", self.chimera) == 40
        assert {v.sequence: v for v in verdicts}[self.chimera].status == "partial"

    def test_thread_pool_matches_serial(self):
        table = table_of({
            f"s{i}": {self.a: 100 + i, self.b: 80, self.c: 20, self.chimera: 10}
            for i in range(4)
        })
        serial = remove_chimeras(table, ChimeraConfig(n_workers=1))
        pooled = remove_chimeras(table, ChimeraConfig(n_workers=3))
        assert serial[0] == pooled[0]
        assert serial[1] == pooled[1]
