"""Shared utilities for cellsieve workflows."""

from __future__ import annotations

from typing import Any

import numpy as np
import scipy.sparse as sp

from cellsieve.errors import InvalidConfigurationError, InvalidInputError


def as_count_matrix(counts: Any, name: str = "counts") -> sp.csr_matrix:
    """Validate a cells x genes count matrix and return it as CSR.

    Args:
        counts: Dense array-like or scipy sparse matrix.
        name: Label used in error messages.

    Returns:
        A CSR matrix of float64 counts. The input is never modified.

    Raises:
        InvalidInputError: If the matrix is not 2D, is empty, or holds
            negative or non-finite values.
    """
    if sp.issparse(counts):
        mat = sp.csr_matrix(counts, dtype=np.float64, copy=True)
    else:
        arr = np.asarray(counts, dtype=np.float64)
        if arr.ndim != 2:
            raise InvalidInputError(f"{name} must be 2D (cells x genes); got ndim={arr.ndim}.")
        mat = sp.csr_matrix(arr)
    if mat.shape[0] == 0 or mat.shape[1] == 0:
        raise InvalidInputError(f"{name} must contain at least one cell and one gene.")
    if mat.nnz:
        if not np.all(np.isfinite(mat.data)):
            raise InvalidInputError(f"{name} contains NaN or infinite values.")
        if np.any(mat.data < 0):
            raise InvalidInputError(f"{name} must be non-negative.")
    mat.eliminate_zeros()
    return mat


def row_sums(mat: sp.spmatrix) -> np.ndarray:
    return np.asarray(mat.sum(axis=1)).ravel()


def as_bool_mask(mask: Any, n: int, name: str) -> np.ndarray:
    """Coerce a boolean mask (or index array) to a boolean vector of length ``n``."""
    arr = np.asarray(mask)
    if arr.dtype == bool:
        out = arr.ravel()
        if out.size != n:
            raise InvalidInputError(f"{name} length {out.size} does not match {n}.")
        return out
    idx = arr.ravel().astype(int)
    if idx.size and (idx.min() < -n or idx.max() >= n):
        raise InvalidInputError(f"{name} contains out-of-range indices.")
    out = np.zeros(n, dtype=bool)
    out[idx] = True
    return out


def resolve_rng(seed: int | np.random.Generator | None) -> np.random.Generator:
    """Build the generator for a randomized procedure.

    Omitting the seed is a configuration error; no global RNG is ever used.
    """
    if seed is None:
        raise InvalidConfigurationError(
            "An explicit seed (int or numpy Generator) is required for randomized procedures."
        )
    if isinstance(seed, np.random.Generator):
        return seed
    if isinstance(seed, (bool, np.bool_)) or not isinstance(seed, (int, np.integer)):
        raise InvalidConfigurationError(
            f"seed must be an int or numpy Generator; got {type(seed).__name__}."
        )
    return np.random.default_rng(int(seed))
