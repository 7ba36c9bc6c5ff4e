"""Per-gene pairwise Welch t-tests between groups of cells."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import scipy.sparse as sp
from scipy import stats


@dataclass(frozen=True)
class GroupMoments:
    """Per-group, per-gene means and unbiased variances.

    Rows follow ``labels``; variances are NaN for groups with fewer than two cells.
    """

    labels: tuple[str, ...]
    means: np.ndarray
    variances: np.ndarray
    sizes: np.ndarray


def group_moments(expr: sp.spmatrix, codes: np.ndarray, labels: tuple[str, ...]) -> GroupMoments:
    """Compute group moments of a cells x genes matrix without densifying it."""
    mat = sp.csr_matrix(expr, dtype=np.float64)
    codes_arr = np.asarray(codes, dtype=int).ravel()
    n_groups = len(labels)
    n_cells = mat.shape[0]
    indicator = sp.csr_matrix(
        (np.ones(n_cells), (codes_arr, np.arange(n_cells))), shape=(n_groups, n_cells)
    )
    sizes = np.asarray(indicator.sum(axis=1)).ravel()
    sums = np.asarray((indicator @ mat).todense())
    sumsq = np.asarray((indicator @ mat.multiply(mat)).todense())
    with np.errstate(divide="ignore", invalid="ignore"):
        means = sums / sizes[:, None]
        variances = (sumsq - sizes[:, None] * means**2) / (sizes[:, None] - 1.0)
    variances = np.where(sizes[:, None] > 1, np.maximum(variances, 0.0), np.nan)
    return GroupMoments(labels=tuple(labels), means=means, variances=variances, sizes=sizes)


def welch_t_test(moments: GroupMoments, i: int, j: int) -> tuple[np.ndarray, np.ndarray]:
    """Two-sided Welch t-test of group ``i`` against group ``j`` for every gene.

    Returns ``(p_values, effect)`` where ``effect`` is ``mean_i - mean_j``.
    Genes with zero variance in both groups get p=1 when the means agree and
    p=0 when they differ; NaN variances propagate to NaN p-values.
    """
    n_i = float(moments.sizes[i])
    n_j = float(moments.sizes[j])
    effect = moments.means[i] - moments.means[j]
    a = moments.variances[i] / n_i
    b = moments.variances[j] / n_j
    se2 = a + b
    pvals = np.full(effect.shape, np.nan)

    zero = se2 == 0
    pvals[zero] = np.where(effect[zero] == 0, 1.0, 0.0)

    pos = se2 > 0
    if np.any(pos):
        t_stat = effect[pos] / np.sqrt(se2[pos])
        denom = a[pos] ** 2 / (n_i - 1.0) + b[pos] ** 2 / (n_j - 1.0)
        df = se2[pos] ** 2 / denom
        pvals[pos] = np.minimum(1.0, 2.0 * stats.t.sf(np.abs(t_stat), df))
    return pvals, effect
