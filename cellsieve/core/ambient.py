"""Ambient-profile estimation and Monte Carlo testing of barcodes against it."""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Sequence

import numpy as np
import pandas as pd
from scipy.interpolate import make_smoothing_spline
from scipy.stats import rankdata

from cellsieve.core.types import AmbientTestResult, BarcodeRanks
from cellsieve.errors import InvalidConfigurationError, InvalidInputError
from cellsieve.stats.scoring import bh_fdr
from cellsieve.utils import as_bool_mask, as_count_matrix, resolve_rng, row_sums

logger = logging.getLogger(__name__)

# Iterations per independently seeded chunk. Fixed so that results do not
# depend on the number of workers.
SIM_CHUNK_SIZE = 250


def _simple_good_turing(counts: np.ndarray) -> np.ndarray:
    """Simple Good-Turing (Gale & Sampson) proportions for integer counts.

    Unseen entries share the probability mass ``N1 / N``; seen entries get
    smoothed frequencies. The result sums to one. With a single distinct
    count the raw proportions are returned.
    """
    cnt = np.rint(np.asarray(counts, dtype=float)).astype(np.int64)
    seen = cnt > 0
    r_obs = cnt[seen]
    total = float(r_obs.sum())
    r, n_r = np.unique(r_obs, return_counts=True)
    # A single frequency class leaves no slope to fit, and an all-singleton
    # pool would give N1/N = 1 to the unseen genes.
    if r.size < 2:
        logger.info("Only one count frequency in the ambient pool; using raw proportions.")
        return cnt / total
    # No unseen genes to share N1/N with.
    p0 = float(n_r[0]) / total if r[0] == 1 and not np.all(seen) else 0.0

    nxt = np.append(r[1:], 2 * r[-1] - r[-2]).astype(float)
    prev = np.insert(r[:-1], 0, 0).astype(float)
    z = 2.0 * n_r / (nxt - prev)
    slope, _ = np.polyfit(np.log(r), np.log(z), 1)
    lgt = r * (1.0 + 1.0 / r) ** (slope + 1.0)

    r_star = np.empty(r.size, dtype=float)
    use_turing = True
    for i, rv in enumerate(r):
        if use_turing and i + 1 < r.size and r[i + 1] == rv + 1:
            n_next = float(n_r[i + 1])
            n_here = float(n_r[i])
            x = (rv + 1) * n_next / n_here
            sd = 1.96 * math.sqrt((rv + 1) ** 2 * n_next / n_here**2 * (1.0 + n_next / n_here))
            if abs(x - lgt[i]) > sd:
                r_star[i] = x
                continue
        use_turing = False
        r_star[i] = lgt[i]

    n_prime = float(np.sum(n_r * r_star))
    per_r = (1.0 - p0) * r_star / n_prime

    props = np.zeros(cnt.size, dtype=float)
    props[seen] = per_r[np.searchsorted(r, r_obs)]
    n_unseen = int(np.sum(~seen))
    if n_unseen:
        props[~seen] = p0 / n_unseen
    return props / props.sum()


def estimate_ambient_profile(gene_counts: Sequence[float] | np.ndarray, good_turing: bool = True) -> np.ndarray:
    """Ambient gene proportions from counts pooled over assumed-empty barcodes.

    Args:
        gene_counts: Per-gene counts summed over the ambient pool.
        good_turing: Smooth with simple Good-Turing so genes absent from the
            pool keep non-zero probability; otherwise use raw proportions.
    """
    arr = np.asarray(gene_counts, dtype=float).ravel()
    if arr.size == 0:
        raise InvalidInputError("gene_counts must contain at least one gene.")
    if np.any(~np.isfinite(arr)) or np.any(arr < 0):
        raise InvalidInputError("gene_counts must be finite and non-negative.")
    if arr.sum() <= 0:
        raise InvalidConfigurationError("The ambient pool holds no counts; cannot estimate a profile.")
    if not good_turing:
        return arr / arr.sum()
    return _simple_good_turing(arr)


def _find_curve_bounds(x: np.ndarray, y: np.ndarray, exclude_from: int) -> tuple[int, int]:
    d1n = np.diff(y) / np.diff(x)
    skip = min(d1n.size - 1, int(np.sum(x <= math.log10(exclude_from))))
    d1n = d1n[skip:]
    right = int(np.argmin(d1n))
    left = int(np.argmax(d1n[: right + 1]))
    return left + skip, right + skip


def barcode_ranks(
    totals: Sequence[float] | np.ndarray,
    lower: int = 100,
    exclude_from: int = 50,
) -> BarcodeRanks:
    """Rank barcodes by total count and locate the knee and inflection points.

    The inflection is the steepest point of the log-log rank curve; the knee is
    the point of maximum curvature of a smoothing spline fitted between the
    left edge and the inflection. Both are NaN if the curve is too short.
    """
    tot = np.asarray(totals, dtype=float).ravel()
    if tot.size == 0:
        raise InvalidInputError("totals must contain at least one barcode.")
    rank = rankdata(-tot, method="average")
    fitted = np.full(tot.size, np.nan)

    keep = tot > lower
    run_totals, run_index = np.unique(tot[keep], return_inverse=True)
    run_totals = run_totals[::-1]
    run_index = run_totals.size - 1 - run_index
    run_rank = np.zeros(run_totals.size)
    if run_totals.size:
        run_rank[run_index] = rank[keep]

    knee = inflection = float("nan")
    if run_totals.size >= 3:
        x = np.log10(run_rank)
        y = np.log10(run_totals)
        left, right = _find_curve_bounds(x, y, exclude_from)
        inflection = float(10 ** y[right])
        span = np.arange(left, right + 1)
        if span.size >= 5:
            spline = make_smoothing_spline(x[span], y[span])
            d1 = spline.derivative(1)(x[span])
            d2 = spline.derivative(2)(x[span])
            curvature = d2 / (1.0 + d1**2) ** 1.5
            knee = float(10 ** y[span[int(np.argmin(curvature))]])
            fitted_runs = np.full(run_totals.size, np.nan)
            fitted_runs[span] = 10 ** spline(x[span])
            kept_idx = np.flatnonzero(keep)
            fitted[kept_idx] = fitted_runs[run_index]
        else:
            logger.info("Too few distinct totals between curve bounds to locate a knee.")
    return BarcodeRanks(rank=rank, total=tot, fitted=fitted, knee=knee, inflection=inflection)


def _previous_occurrences(draws: np.ndarray) -> np.ndarray:
    """For each draw, how many earlier draws hit the same gene."""
    order = np.argsort(draws, kind="stable")
    ordered = draws[order]
    pos = np.arange(ordered.size)
    start = np.ones(ordered.size, dtype=bool)
    start[1:] = ordered[1:] != ordered[:-1]
    first = np.maximum.accumulate(np.where(start, pos, 0))
    out = np.empty(ordered.size, dtype=np.int64)
    out[order] = pos - first
    return out


def _xlogx(values: np.ndarray) -> np.ndarray:
    out = np.zeros(values.shape, dtype=float)
    pos = values > 0
    out[pos] = values[pos] * np.log(values[pos])
    return out


def _simulate_exceedances(
    observed: np.ndarray,
    totals: np.ndarray,
    log_prob: np.ndarray,
    n_iter: int,
    rng: np.random.Generator,
    n_jobs: int,
) -> np.ndarray:
    """Count simulated deviances at least as large as each observed deviance.

    Each iteration adds molecules one at a time from the ambient profile, so a
    single path yields a multinomial draw at every distinct total.
    """
    unique_totals, inverse = np.unique(totals, return_inverse=True)
    max_total = int(unique_totals[-1])
    order = np.argsort(inverse, kind="stable")
    bounds = np.flatnonzero(np.diff(inverse[order])) + 1
    groups = np.split(order, bounds)

    probs = np.exp(log_prob)
    cdf = np.cumsum(probs / probs.sum())
    cdf[-1] = 1.0
    n_genes = probs.size
    counts_grid = np.arange(max_total + 1, dtype=float)
    xlogx_step = np.diff(_xlogx(counts_grid))
    offset = unique_totals * np.log(unique_totals)
    finite_obs = np.isfinite(observed)
    tol = np.where(finite_obs, 1e-8 * np.maximum(1.0, np.abs(np.where(finite_obs, observed, 0.0))), 0.0)
    thresholds = observed - tol

    n_chunks = int(math.ceil(n_iter / SIM_CHUNK_SIZE))
    children = rng.spawn(n_chunks)

    def _run_chunk(k: int) -> np.ndarray:
        gen = children[k]
        size = min(SIM_CHUNK_SIZE, n_iter - k * SIM_CHUNK_SIZE)
        sims = np.empty((size, unique_totals.size), dtype=float)
        for it in range(size):
            draws = np.searchsorted(cdf, gen.random(max_total), side="right")
            np.minimum(draws, n_genes - 1, out=draws)
            inc = xlogx_step[_previous_occurrences(draws)] - log_prob[draws]
            path = np.cumsum(inc)
            sims[it] = 2.0 * (path[unique_totals - 1] - offset)
        sims.sort(axis=0)
        above = np.zeros(observed.size, dtype=np.int64)
        for j, members in enumerate(groups):
            above[members] = size - np.searchsorted(sims[:, j], thresholds[members], side="left")
        return above

    if n_jobs > 1 and n_chunks > 1:
        with ThreadPoolExecutor(max_workers=int(n_jobs)) as pool:
            parts = list(pool.map(_run_chunk, range(n_chunks)))
    else:
        parts = [_run_chunk(k) for k in range(n_chunks)]
    return np.sum(parts, axis=0)


def ambient_test(
    counts: Any,
    lower: int = 100,
    n_iter: int = 10000,
    test_ambient: bool = False,
    subset: Any = None,
    seed: int | np.random.Generator | None = None,
    retain: float | str | None = None,
    ignore: int | None = None,
    barcodes: Sequence[Any] | None = None,
    genes: Sequence[Any] | None = None,
    n_jobs: int = 1,
    good_turing: bool = True,
) -> AmbientTestResult:
    """Test each barcode for deviation from the ambient expression profile.

    Barcodes with total <= ``lower`` (restricted to ``subset`` when given) form
    the ambient pool. Every barcode with total > ``lower`` is tested with a
    multinomial deviance against the profile; p-values come from ``n_iter``
    simulated ambient barcodes at the same total and are bounded below by
    ``1 / (n_iter + 1)``, with ``limited`` marking barcodes at that bound.
    BH FDR is computed over barcodes above ``lower``.

    Args:
        counts: Barcodes x genes count matrix.
        lower: Total-count ceiling of the ambient pool.
        n_iter: Monte Carlo iterations.
        test_ambient: Also report p-values for pool barcodes with non-zero
            totals (calibration check; their FDR stays NaN).
        subset: Mask of barcodes eligible for the ambient pool.
        seed: Required int seed or numpy Generator.
        retain: Totals at or above this are called cells outright (p=0);
            ``"knee"`` uses the barcode-rank knee.
        ignore: Barcodes with total <= ``ignore`` are never tested.
        barcodes, genes: Optional identifiers for the result index/profile.
        n_jobs: Worker threads for the simulation; results do not depend on it.
        good_turing: Smooth the ambient profile with Good-Turing.

    Raises:
        InvalidConfigurationError: Missing seed, ``lower`` at or above the
            largest total, or an empty ambient pool.
        InvalidInputError: Malformed counts, identifiers or ``n_iter``.
    """
    rng = resolve_rng(seed)
    mat = as_count_matrix(counts)
    n_bc, n_genes = mat.shape
    if int(n_iter) < 1:
        raise InvalidInputError("n_iter must be a positive integer.")
    n_iter = int(n_iter)
    lower = int(lower)

    bc_index = pd.Index([str(i) for i in range(n_bc)] if barcodes is None else barcodes)
    gene_index = pd.Index([str(i) for i in range(n_genes)] if genes is None else genes)
    if len(bc_index) != n_bc:
        raise InvalidInputError(f"barcodes length {len(bc_index)} does not match {n_bc} rows.")
    if len(gene_index) != n_genes:
        raise InvalidInputError(f"genes length {len(gene_index)} does not match {n_genes} columns.")

    totals = row_sums(mat)
    max_total = float(totals.max())
    if lower >= max_total:
        raise InvalidConfigurationError(
            f"lower={lower} is at or above the largest barcode total ({max_total:g}); "
            "no barcode could be a cell."
        )

    pool = totals <= lower
    if subset is not None:
        pool &= as_bool_mask(subset, n_bc, "subset")
    if not np.any(pool):
        raise InvalidConfigurationError("No barcodes fall in the ambient pool; check lower/subset.")
    pool_counts = np.asarray(mat[np.flatnonzero(pool)].sum(axis=0)).ravel()
    if pool_counts.sum() <= 0:
        raise InvalidConfigurationError("The ambient pool holds no counts; cannot estimate a profile.")
    profile = estimate_ambient_profile(pool_counts, good_turing=good_turing)

    retain_value: float | None
    if retain is None:
        retain_value = None
    elif isinstance(retain, str):
        if retain != "knee":
            raise InvalidConfigurationError(f"retain must be numeric, 'knee' or None; got '{retain}'.")
        knee = barcode_ranks(totals, lower=lower).knee
        retain_value = None if not np.isfinite(knee) else float(knee)
        if retain_value is None:
            logger.warning("Could not locate a knee point; no barcodes retained outright.")
    else:
        retain_value = float(retain)

    tested = totals > lower
    if test_ambient:
        tested |= totals <= lower
    if ignore is not None:
        tested &= totals > int(ignore)
    tested &= totals > 0
    retained = tested & (totals >= retain_value) if retain_value is not None else np.zeros(n_bc, dtype=bool)
    simulate = tested & ~retained

    keep_genes = profile > 0
    if not np.all(keep_genes):
        logger.info("%d genes have zero ambient probability and are excluded from simulation.", int(np.sum(~keep_genes)))
    log_prob = np.log(profile[keep_genes])

    sim_idx = np.flatnonzero(simulate)
    sub = mat[sim_idx]
    sim_totals = np.rint(totals[sim_idx]).astype(np.int64)
    data_rows = sub.copy()
    data_rows.data = _xlogx(data_rows.data)
    xlogx = row_sums(data_rows)
    xlogp = np.asarray(sub[:, np.flatnonzero(keep_genes)] @ log_prob).ravel()
    deviance = 2.0 * (xlogx - xlogp - _xlogx(sim_totals.astype(float)))
    impossible = row_sums(sub[:, np.flatnonzero(~keep_genes)]) > 0
    deviance[impossible] = np.inf

    logger.info(
        "Ambient pool: %d barcodes (%d counts); testing %d barcodes (%d retained) with %d iterations.",
        int(pool.sum()),
        int(pool_counts.sum()),
        int(tested.sum()),
        int(retained.sum()),
        n_iter,
    )

    p_value = np.full(n_bc, np.nan)
    limited = np.zeros(n_bc, dtype=bool)
    if sim_idx.size:
        above = _simulate_exceedances(deviance, sim_totals, log_prob, n_iter, rng, int(n_jobs))
        p_value[sim_idx] = (above + 1.0) / (n_iter + 1.0)
        limited[sim_idx] = above == 0
    p_value[retained] = 0.0

    fdr = np.full(n_bc, np.nan)
    fdr_mask = (totals > lower) & np.isfinite(p_value)
    if np.any(fdr_mask):
        fdr[fdr_mask] = bh_fdr(p_value[fdr_mask])

    table = pd.DataFrame(
        {
            "total": np.rint(totals).astype(np.int64),
            "p_value": p_value,
            "fdr": fdr,
            "limited": limited,
        },
        index=bc_index,
    )
    n_limited = int(limited.sum())
    if n_limited:
        logger.info("%d barcodes hit the p-value lower bound; more iterations may resolve them.", n_limited)

    return AmbientTestResult(
        table=table,
        ambient_profile=pd.Series(profile, index=gene_index, name="ambient_proportion"),
        lower=lower,
        n_iter=n_iter,
        retain=retain_value,
        metadata={
            "n_ambient_barcodes": int(pool.sum()),
            "n_tested": int(tested.sum()),
            "n_retained": int(retained.sum()),
            "n_limited": n_limited,
            "n_zero_profile_genes": int(np.sum(~keep_genes)),
            "test_ambient": bool(test_ambient),
        },
    )
