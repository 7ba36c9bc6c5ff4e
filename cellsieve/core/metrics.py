"""Per-cell QC metric computation from a count matrix."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

import numpy as np
import pandas as pd

from cellsieve.core.types import MetricTable
from cellsieve.errors import InvalidInputError
from cellsieve.utils import as_bool_mask, as_count_matrix, row_sums

logger = logging.getLogger(__name__)


def per_cell_qc_metrics(
    counts: Any,
    subsets: Mapping[str, Any] | None = None,
    cell_ids: Sequence[Any] | None = None,
) -> MetricTable:
    """Compute library size, detected genes and subset percentages per cell.

    Args:
        counts: Cells x genes count matrix (dense or sparse).
        subsets: Mapping of subset name (e.g. "Mito") to a boolean gene mask
            or an array of gene indices.
        cell_ids: Optional cell identifiers; defaults to positional labels.

    Returns:
        MetricTable with NaN percentages for cells with zero total count.
    """
    mat = as_count_matrix(counts)
    n_cells, n_genes = mat.shape
    if cell_ids is None:
        ids = pd.Index([str(i) for i in range(n_cells)])
    else:
        ids = pd.Index(cell_ids)
        if len(ids) != n_cells:
            raise InvalidInputError(
                f"cell_ids length {len(ids)} does not match {n_cells} cells."
            )

    totals = row_sums(mat)
    detected = np.diff(mat.indptr).astype(np.int64)

    sums: dict[str, np.ndarray] = {}
    pcts: dict[str, np.ndarray] = {}
    for name, mask in (subsets or {}).items():
        gene_mask = as_bool_mask(mask, n_genes, f"subset '{name}'")
        sub = row_sums(mat[:, np.flatnonzero(gene_mask)])
        with np.errstate(divide="ignore", invalid="ignore"):
            pct = np.where(totals > 0, sub / totals * 100.0, np.nan)
        sums[str(name)] = sub
        pcts[str(name)] = pct
        logger.debug("Subset %s: %d genes", name, int(gene_mask.sum()))

    n_empty = int(np.sum(totals == 0))
    if n_empty and pcts:
        logger.info("%d cells have zero total count; subset percentages set to NaN.", n_empty)

    return MetricTable(
        cell_ids=ids,
        total_count=np.rint(totals).astype(np.int64),
        detected_features=detected,
        subset_sums=sums,
        subset_percentages=pcts,
    )


def gene_prefix_mask(gene_names: Sequence[str], prefix: str) -> np.ndarray:
    """Boolean mask of genes whose name starts with ``prefix`` (case-insensitive)."""
    key = str(prefix).lower()
    return np.array([str(g).lower().startswith(key) for g in gene_names], dtype=bool)
