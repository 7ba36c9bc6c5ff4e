"""Doublet detection by comparing each cluster against pairs of other clusters."""

from __future__ import annotations

import logging
from itertools import combinations
from typing import Any, Sequence

import numpy as np
import pandas as pd

from cellsieve.core.outliers import detect_outliers
from cellsieve.core.types import ClusterDoubletResult
from cellsieve.errors import InvalidInputError
from cellsieve.stats.de import group_moments, welch_t_test
from cellsieve.stats.scoring import bh_fdr
from cellsieve.utils import as_count_matrix, row_sums

logger = logging.getLogger(__name__)

TIE_BREAKS = ("library_size", "lexical")

TABLE_COLUMNS = [
    "source1",
    "source2",
    "n_de",
    "median_de",
    "best_p_value",
    "lib_size1",
    "lib_size2",
    "prop",
    "outlier",
]
PAIR_COLUMNS = ["query", "source1", "source2", "n_de", "best_p_value", "lib_size1", "lib_size2"]


def _empty_result(threshold: float) -> ClusterDoubletResult:
    table = pd.DataFrame(columns=TABLE_COLUMNS)
    table.index.name = "cluster"
    return ClusterDoubletResult(table=table, all_pairs=pd.DataFrame(columns=PAIR_COLUMNS), threshold=threshold)


def _log_normalize(mat, size_factors: np.ndarray):
    scaled = mat.multiply(1.0 / size_factors[:, None]).tocsr()
    scaled.data = np.log1p(scaled.data)
    return scaled


def _library_penalty(r1: float, r2: float) -> float:
    return max(0.0, 1.0 - r1) + max(0.0, 1.0 - r2)


def find_doublet_clusters(
    counts: Any,
    clusters: Sequence[Any],
    threshold: float = 0.05,
    size_factors: Sequence[float] | None = None,
    tie_break: str = "library_size",
    n_mads: float = 3.0,
) -> ClusterDoubletResult:
    """Rank clusters by how well they look like a mixture of two other clusters.

    For a query cluster Q and sources A and B, a gene counts towards ``n_de`` if
    Q differs from both A and B in the same direction: its intersection-union
    p-value ``max(p_QA, p_QB)`` is BH-adjusted across genes and compared with
    ``threshold``. A genuine doublet of A and B sits between them, so few genes
    qualify. The best source pair minimises ``n_de``.

    Args:
        counts: Cells x genes count matrix.
        clusters: Cluster label per cell (read only).
        threshold: FDR threshold for calling a gene DE.
        size_factors: Optional per-cell size factors; library sizes by default,
            in which case cells with zero counts are left out of the scan.
        tie_break: ``"library_size"`` prefers, among pairs with equal
            ``n_de``, the pair whose library-size ratios fall least below one,
            then lexical label order. ``"lexical"`` uses label order only.
        n_mads: MAD multiplier for flagging clusters with outlying low ``n_de``.

    Returns:
        ClusterDoubletResult ranked by ascending ``n_de``; empty when fewer
        than three clusters are present.
    """
    mat = as_count_matrix(counts)
    n_cells = mat.shape[0]
    labels = pd.Series(np.asarray(clusters, dtype=object).ravel()).astype(str)
    if labels.size != n_cells:
        raise InvalidInputError(f"clusters length {labels.size} does not match {n_cells} cells.")
    if tie_break not in TIE_BREAKS:
        raise InvalidInputError(f"tie_break must be one of {TIE_BREAKS}; got '{tie_break}'.")
    threshold = float(threshold)

    if size_factors is None:
        empty = row_sums(mat) <= 0
        if np.any(empty):
            logger.info("Excluding %d cells with zero counts from the doublet-cluster scan.", int(empty.sum()))
            keep = np.flatnonzero(~empty)
            mat = mat[keep]
            labels = labels.iloc[keep].reset_index(drop=True)
            n_cells = mat.shape[0]

    codes, uniques = pd.factorize(labels, sort=True)
    names = tuple(str(u) for u in uniques)
    if len(names) < 3:
        logger.info("Only %d clusters present; at least 3 are needed for doublet triples.", len(names))
        return _empty_result(threshold)

    lib_sizes = row_sums(mat)
    if size_factors is None:
        sf = lib_sizes.astype(float)
    else:
        sf = np.asarray(size_factors, dtype=float).ravel()
        if sf.size != n_cells:
            raise InvalidInputError(f"size_factors length {sf.size} does not match {n_cells} cells.")
    if np.any(~np.isfinite(sf)) or np.any(sf <= 0):
        raise InvalidInputError("Size factors must be positive; remove cells with zero counts first.")
    sf = sf / sf.mean()

    expr = _log_normalize(mat, sf)
    moments = group_moments(expr, codes, names)
    n_groups = len(names)

    pvals: dict[tuple[int, int], np.ndarray] = {}
    signs: dict[tuple[int, int], np.ndarray] = {}
    n_de_pair = np.zeros((n_groups, n_groups), dtype=int)
    for i, j in combinations(range(n_groups), 2):
        p, effect = welch_t_test(moments, i, j)
        sign = np.sign(effect)
        pvals[(i, j)] = pvals[(j, i)] = p
        signs[(i, j)] = sign
        signs[(j, i)] = -sign
        n_sig = int(np.sum(bh_fdr(p) <= threshold))
        n_de_pair[i, j] = n_de_pair[j, i] = n_sig

    median_lib = np.array([np.median(lib_sizes[codes == g]) for g in range(n_groups)])
    sizes = moments.sizes

    pair_rows: list[dict[str, Any]] = []
    best_rows: dict[str, dict[str, Any]] = {}
    for q in range(n_groups):
        others = [g for g in range(n_groups) if g != q]
        best_key: tuple | None = None
        for a, b in combinations(others, 2):
            same = (signs[(q, a)] == signs[(q, b)]) & (signs[(q, a)] != 0)
            iut = np.where(same, np.fmax(pvals[(q, a)], pvals[(q, b)]), 1.0)
            iut = np.where(np.isnan(iut), 1.0, iut)
            adj = bh_fdr(iut)
            n_de = int(np.sum(adj <= threshold))
            r1 = float(median_lib[a] / median_lib[q])
            r2 = float(median_lib[b] / median_lib[q])
            row = {
                "query": names[q],
                "source1": names[a],
                "source2": names[b],
                "n_de": n_de,
                "best_p_value": float(np.min(adj)),
                "lib_size1": r1,
                "lib_size2": r2,
            }
            pair_rows.append(row)
            penalty = _library_penalty(r1, r2) if tie_break == "library_size" else 0.0
            key = (n_de, penalty, names[a], names[b])
            if best_key is None or key < best_key:
                best_key = key
                best_rows[names[q]] = row

        best = best_rows[names[q]]
        best_rows[names[q]] = {
            "source1": best["source1"],
            "source2": best["source2"],
            "n_de": best["n_de"],
            "median_de": float(np.median(n_de_pair[q, others])),
            "best_p_value": best["best_p_value"],
            "lib_size1": best["lib_size1"],
            "lib_size2": best["lib_size2"],
            "prop": float(sizes[q] / n_cells),
        }

    table = pd.DataFrame.from_dict(best_rows, orient="index")
    table.index.name = "cluster"
    table = table.sort_index(kind="mergesort").sort_values("n_de", kind="mergesort")

    flagged = detect_outliers(
        np.log1p(table["n_de"].to_numpy(dtype=float)),
        direction="lower",
        n_mads=n_mads,
    )
    table["outlier"] = flagged.flags
    table = table[TABLE_COLUMNS]

    all_pairs = pd.DataFrame(pair_rows, columns=PAIR_COLUMNS)
    logger.info(
        "Doublet-cluster scan over %d clusters; lowest n_de: %s (%d) from %s + %s.",
        n_groups,
        table.index[0],
        int(table["n_de"].iloc[0]),
        table["source1"].iloc[0],
        table["source2"].iloc[0],
    )
    return ClusterDoubletResult(table=table, all_pairs=all_pairs, threshold=threshold)
