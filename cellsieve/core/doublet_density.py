"""Doublet scores from the local density of simulated doublets."""

from __future__ import annotations

import logging
from typing import Any, Sequence

import numpy as np
import scipy.sparse as sp
from scipy.spatial import cKDTree
from sklearn.decomposition import PCA

from cellsieve.core.types import DoubletDensityResult
from cellsieve.errors import InvalidConfigurationError, InvalidInputError
from cellsieve.utils import as_bool_mask, as_count_matrix, resolve_rng, row_sums

logger = logging.getLogger(__name__)

SIM_BLOCK_SIZE = 2000


def simulate_doublet_pairs(
    n_cells: int,
    n_sim: int,
    rng: np.random.Generator,
    allow_self_pairs: bool = False,
) -> np.ndarray:
    """Draw ``n_sim`` cell pairs uniformly with replacement, shape ``(n_sim, 2)``."""
    if n_cells < 2:
        raise InvalidInputError("At least two cells are needed to simulate doublets.")
    first = rng.integers(0, n_cells, size=n_sim)
    if allow_self_pairs:
        second = rng.integers(0, n_cells, size=n_sim)
    else:
        second = rng.integers(0, n_cells - 1, size=n_sim)
        second = second + (second >= first)
    return np.column_stack([first, second])


def _top_variable_genes(norm: sp.csr_matrix, n_top: int) -> np.ndarray:
    """Sorted column indices of the ``n_top`` genes with the largest log-expression variance."""
    if n_top >= norm.shape[1]:
        return np.arange(norm.shape[1])
    logged = norm.copy()
    logged.data = np.log1p(logged.data)
    mean = np.asarray(logged.mean(axis=0)).ravel()
    logged.data **= 2
    var = np.asarray(logged.mean(axis=0)).ravel() - mean**2
    return np.sort(np.argsort(-var, kind="stable")[:n_top])


def _tricube_density(points: np.ndarray, query: np.ndarray, bandwidth: float) -> np.ndarray:
    """Tricube-weighted neighbour counts of ``points`` around each ``query`` row."""
    tree = cKDTree(points)
    neighbours = tree.query_ball_point(query, r=bandwidth)
    out = np.zeros(query.shape[0], dtype=float)
    for i, idx in enumerate(neighbours):
        if not idx:
            continue
        dist = np.linalg.norm(points[idx] - query[i], axis=1)
        out[i] = float(np.sum((1.0 - np.clip(dist / bandwidth, 0.0, 1.0) ** 3) ** 3))
    return out


def compute_doublet_density(
    counts: Any,
    n_dim: int = 50,
    size_factors: Sequence[float] | None = None,
    seed: int | np.random.Generator | None = None,
    k: int = 50,
    n_sim: int | None = None,
    allow_self_pairs: bool = False,
    projector: Any = None,
    subset_genes: Any = None,
    n_top_genes: int | None = None,
) -> DoubletDensityResult:
    """Score each cell by the density of simulated doublets around it.

    Doublets are simulated by summing the content-scaled normalized profiles of
    two random cells and renormalizing by the combined content. Real and
    simulated cells are log-transformed and projected into the same
    ``n_dim``-dimensional space, fitted on real cells only. Around each real
    cell, tricube-weighted counts of simulated doublets and of real cells are
    taken within a bandwidth equal to the median distance to the ``k``-th
    nearest real neighbour. The score is the ratio of the two densities,
    scaled by ``n_sim / n_cells`` so that 1 means equal density.

    Args:
        counts: Cells x genes count matrix.
        n_dim: Number of projected dimensions.
        size_factors: Per-cell content factors (e.g. from spike-ins); library
            size factors when omitted.
        seed: Required int seed or numpy Generator.
        k: Neighbour rank that sets the kernel bandwidth.
        n_sim: Number of simulated doublets; ``max(10000, n_cells)`` by default.
        allow_self_pairs: Allow a cell to be paired with itself.
        projector: Optional fitted object with ``transform``; its first
            ``n_dim`` output columns are used instead of fitting a PCA.
        subset_genes: Optional gene mask/indices used for the projection.
        n_top_genes: Keep only this many genes with the largest variance of
            log-normalized expression (after ``subset_genes``). All genes are
            used when None; the dense projection input is cells x genes, so
            large matrices should set this.

    Returns:
        DoubletDensityResult with one unthresholded score per cell.
    """
    rng = resolve_rng(seed)
    mat = as_count_matrix(counts)
    n_cells = mat.shape[0]
    if n_cells < 2:
        raise InvalidInputError("At least two cells are required.")
    if int(k) < 1:
        raise InvalidInputError("k must be a positive integer.")
    n_dim = int(n_dim)
    if n_dim < 1:
        raise InvalidConfigurationError("n_dim must be a positive integer.")
    n_sim = max(10000, n_cells) if n_sim is None else int(n_sim)
    if n_sim < 1:
        raise InvalidInputError("n_sim must be a positive integer.")
    if n_top_genes is not None and int(n_top_genes) < 1:
        raise InvalidConfigurationError("n_top_genes must be a positive integer or None.")

    lib = row_sums(mat)
    if np.any(lib <= 0):
        raise InvalidInputError("All cells need non-zero counts; remove empty cells first.")
    sf_norm = lib / lib.mean()
    if size_factors is None:
        content = sf_norm
    else:
        content = np.asarray(size_factors, dtype=float).ravel()
        if content.size != n_cells:
            raise InvalidInputError(f"size_factors length {content.size} does not match {n_cells} cells.")
        if np.any(~np.isfinite(content)) or np.any(content <= 0):
            raise InvalidInputError("size_factors must be positive and finite.")
        content = content / content.mean()

    norm = (sp.diags(1.0 / sf_norm) @ mat).tocsr()
    if subset_genes is not None:
        norm = norm[:, np.flatnonzero(as_bool_mask(subset_genes, norm.shape[1], "subset_genes"))]
    if n_top_genes is not None:
        norm = norm[:, _top_variable_genes(norm, int(n_top_genes))]
    n_genes = norm.shape[1]

    if projector is None:
        available = min(n_cells, n_genes)
        if n_dim > available:
            raise InvalidConfigurationError(
                f"n_dim={n_dim} exceeds the {available} dimensions available from "
                f"{n_cells} cells x {n_genes} genes."
            )
    else:
        available = getattr(projector, "n_components_", None)
        if available is not None and n_dim > int(available):
            raise InvalidConfigurationError(
                f"n_dim={n_dim} exceeds the projector's {int(available)} components."
            )

    real_y = norm.copy()
    real_y.data = np.log1p(real_y.data)
    real_y = real_y.toarray()
    if projector is None:
        state = int(rng.integers(np.iinfo(np.int32).max))
        projector = PCA(n_components=n_dim, svd_solver="auto", random_state=state).fit(real_y)
    real_pcs = np.asarray(projector.transform(real_y))[:, :n_dim]
    del real_y
    if real_pcs.shape[1] < n_dim:
        raise InvalidConfigurationError(
            f"n_dim={n_dim} exceeds the {real_pcs.shape[1]} dimensions produced by the projector."
        )

    pairs = simulate_doublet_pairs(n_cells, n_sim, rng, allow_self_pairs=allow_self_pairs)
    scaled = (sp.diags(content) @ norm).tocsr()
    sim_pcs = np.empty((n_sim, n_dim), dtype=float)
    for start in range(0, n_sim, SIM_BLOCK_SIZE):
        block = pairs[start : start + SIM_BLOCK_SIZE]
        left, right = block[:, 0], block[:, 1]
        summed = sp.diags(1.0 / (content[left] + content[right])) @ (scaled[left] + scaled[right])
        sim = summed.toarray()
        np.log1p(sim, out=sim)
        sim_pcs[start : start + block.shape[0]] = np.asarray(projector.transform(sim))[:, :n_dim]

    k_eff = min(int(k), n_cells - 1)
    dist, _ = cKDTree(real_pcs).query(real_pcs, k=k_eff + 1)
    bandwidth = max(1e-8, float(np.median(np.atleast_2d(dist)[:, -1])))

    self_n = _tricube_density(real_pcs, real_pcs, bandwidth)
    sim_n = _tricube_density(sim_pcs, real_pcs, bandwidth)
    scores = sim_n / (self_n * (n_sim / n_cells))

    logger.info(
        "Doublet density: %d cells, %d simulated doublets, %d dims, bandwidth %.4g.",
        n_cells,
        n_sim,
        n_dim,
        bandwidth,
    )
    return DoubletDensityResult(
        scores=scores,
        pairs=pairs,
        bandwidth=bandwidth,
        n_sim=n_sim,
        n_dim=n_dim,
        metadata={"k": k_eff, "allow_self_pairs": bool(allow_self_pairs), "n_genes": int(n_genes)},
    )
