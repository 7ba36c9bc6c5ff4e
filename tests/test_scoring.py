import numpy as np
import pytest
import scipy.sparse as sp
from scipy import stats

from cellsieve.stats import bh_fdr, group_moments, median_mad, welch_t_test


def test_bh_fdr_basic():
    pvals = np.array([0.01, 0.04, 0.03, 0.005], dtype=float)
    qvals = bh_fdr(pvals)
    np.testing.assert_allclose(qvals, [0.02, 0.04, 0.04, 0.02])
    assert np.all(qvals >= pvals)


def test_bh_fdr_is_monotone_in_p():
    rng = np.random.default_rng(0)
    pvals = rng.uniform(size=200) ** 3
    qvals = bh_fdr(pvals)
    order = np.argsort(pvals)
    assert np.all(np.diff(qvals[order]) >= -1e-12)
    assert np.all((qvals >= 0.0) & (qvals <= 1.0))


def test_bh_fdr_keeps_nan():
    qvals = bh_fdr(np.array([0.01, np.nan, 0.02]))
    assert np.isnan(qvals[1])
    np.testing.assert_allclose(qvals[[0, 2]], [0.02, 0.02])


def test_bh_fdr_rejects_out_of_range():
    with pytest.raises(ValueError, match="p-values must be in"):
        bh_fdr(np.array([0.5, 1.5]))


def test_median_mad_scaled():
    med, mad = median_mad(np.array([1.0, 2.0, 3.0, 4.0, 100.0, np.nan]))
    assert med == 3.0
    assert np.isclose(mad, 1.4826)
    with pytest.raises(ValueError):
        median_mad(np.array([np.nan]))


def test_welch_matches_scipy():
    rng = np.random.default_rng(1)
    x = rng.poisson(3.0, size=(12, 5)).astype(float)
    y = rng.poisson(5.0, size=(9, 5)).astype(float)
    expr = sp.csr_matrix(np.vstack([x, y]))
    codes = np.array([0] * 12 + [1] * 9)
    moments = group_moments(expr, codes, ("x", "y"))

    assert moments.sizes.tolist() == [12, 9]
    np.testing.assert_allclose(moments.means[0], x.mean(axis=0))
    np.testing.assert_allclose(moments.variances[1], y.var(axis=0, ddof=1))

    pvals, effect = welch_t_test(moments, 0, 1)
    ref = stats.ttest_ind(x, y, axis=0, equal_var=False)
    np.testing.assert_allclose(effect, x.mean(axis=0) - y.mean(axis=0))
    np.testing.assert_allclose(pvals, ref.pvalue, rtol=1e-8)


def test_welch_constant_genes():
    expr = sp.csr_matrix(np.array([[1.0, 2.0], [1.0, 2.0], [1.0, 3.0], [1.0, 3.0]]))
    moments = group_moments(expr, np.array([0, 0, 1, 1]), ("a", "b"))
    pvals, effect = welch_t_test(moments, 0, 1)
    assert pvals.tolist() == [1.0, 0.0]
    assert effect.tolist() == [0.0, -1.0]
