from __future__ import annotations

import logging
import warnings

import numpy as np
import pytest
import scipy.sparse as sp

from cellsieve.core.doublet_cluster import PAIR_COLUMNS, TABLE_COLUMNS, _library_penalty, find_doublet_clusters
from cellsieve.errors import DegenerateStatisticWarning, InvalidInputError


def _mixture_counts(seed: int = 0):
    rng = np.random.default_rng(seed)
    high, low = 20.0, 1.0
    lam_a = np.r_[np.full(20, high), np.full(40, low)]
    lam_b = np.r_[np.full(20, low), np.full(20, high), np.full(20, low)]
    lam_d = np.r_[np.full(40, low), np.full(20, high)]
    lam_c = lam_a + lam_b
    blocks = [
        rng.poisson(lam_a, size=(50, 60)),
        rng.poisson(lam_b, size=(50, 60)),
        rng.poisson(lam_c, size=(20, 60)),
        rng.poisson(lam_d, size=(50, 60)),
    ]
    labels = ["A"] * 50 + ["B"] * 50 + ["C"] * 20 + ["D"] * 50
    return np.vstack(blocks).astype(float), np.array(labels)


def _run(counts, labels, **kwargs):
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", DegenerateStatisticWarning)
        return find_doublet_clusters(counts, labels, **kwargs)


def test_mixture_cluster_ranks_first_with_its_sources():
    counts, labels = _mixture_counts()
    res = _run(sp.csr_matrix(counts), labels)
    table = res.table

    assert list(table.columns) == TABLE_COLUMNS
    assert table.index.name == "cluster"
    assert table.index[0] == "C"
    top = table.loc["C"]
    assert {top["source1"], top["source2"]} == {"A", "B"}
    assert top["n_de"] < table.drop(index="C")["n_de"].min()
    assert bool(top["outlier"])
    assert not table.drop(index="C")["outlier"].any()
    assert top["lib_size1"] < 0.75 and top["lib_size2"] < 0.75
    assert np.isclose(top["prop"], 20 / 170)
    assert table["n_de"].is_monotonic_increasing


def test_all_pairs_long_table():
    counts, labels = _mixture_counts(seed=1)
    res = _run(counts, labels)
    assert list(res.all_pairs.columns) == PAIR_COLUMNS
    assert len(res.all_pairs) == 4 * 3
    best = res.pairs_for("C").iloc[0]
    assert {best["source1"], best["source2"]} == {"A", "B"}
    assert res.threshold == 0.05


def test_numeric_labels_are_stringified():
    counts, labels = _mixture_counts(seed=2)
    codes = np.searchsorted(np.array(["A", "B", "C", "D"]), labels)
    res = _run(counts, codes)
    assert res.table.index[0] == "2"
    assert set(res.table.index) == {"0", "1", "2", "3"}


def test_fewer_than_three_clusters_gives_empty_result(caplog):
    caplog.set_level(logging.INFO)
    counts, labels = _mixture_counts()
    keep = np.isin(labels, ["A", "B"])
    res = find_doublet_clusters(counts[keep], labels[keep])
    assert res.empty
    assert list(res.table.columns) == TABLE_COLUMNS
    assert res.all_pairs.empty
    assert "at least 3 are needed" in caplog.text


def test_library_penalty_prefers_sources_at_least_as_large():
    assert _library_penalty(1.5, 2.0) == 0.0
    assert np.isclose(_library_penalty(0.5, 1.2), 0.5)
    assert np.isclose(_library_penalty(0.5, 0.5), 1.0)


def test_lexical_tie_break_is_deterministic():
    counts, labels = _mixture_counts(seed=3)
    first = _run(counts, labels, tie_break="lexical")
    second = _run(counts, labels, tie_break="lexical")
    assert first.table.equals(second.table)
    assert first.table.index[0] == "C"


def test_invalid_inputs():
    counts, labels = _mixture_counts()
    with pytest.raises(InvalidInputError, match="clusters length"):
        find_doublet_clusters(counts, labels[:-1])
    with pytest.raises(InvalidInputError, match="tie_break"):
        find_doublet_clusters(counts, labels, tie_break="random")
    with pytest.raises(InvalidInputError, match="size_factors length"):
        find_doublet_clusters(counts, labels, size_factors=np.ones(3))


def test_zero_count_cells_are_left_out(caplog):
    caplog.set_level(logging.INFO)
    counts, labels = _mixture_counts(seed=4)
    counts[[0, 60]] = 0.0
    res = _run(counts, labels)
    assert res.table.index[0] == "C"
    assert np.isclose(res.table.loc["C", "prop"], 20 / 168)
    assert "Excluding 2 cells with zero counts" in caplog.text
