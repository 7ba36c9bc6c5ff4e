"""Core QC, cell-calling and doublet algorithms."""

from cellsieve.core.ambient import ambient_test, barcode_ranks, estimate_ambient_profile
from cellsieve.core.doublet_cluster import find_doublet_clusters
from cellsieve.core.doublet_density import compute_doublet_density, simulate_doublet_pairs
from cellsieve.core.metrics import gene_prefix_mask, per_cell_qc_metrics
from cellsieve.core.outliers import detect_outliers, quick_per_cell_qc
from cellsieve.core.types import (
    AmbientTestResult,
    BarcodeRanks,
    BatchThresholds,
    ClusterDoubletResult,
    DoubletDensityResult,
    MetricTable,
    OutlierResult,
    QuickQCResult,
)

__all__ = [
    "AmbientTestResult",
    "BarcodeRanks",
    "BatchThresholds",
    "ClusterDoubletResult",
    "DoubletDensityResult",
    "MetricTable",
    "OutlierResult",
    "QuickQCResult",
    "ambient_test",
    "barcode_ranks",
    "compute_doublet_density",
    "detect_outliers",
    "estimate_ambient_profile",
    "find_doublet_clusters",
    "gene_prefix_mask",
    "per_cell_qc_metrics",
    "quick_per_cell_qc",
    "simulate_doublet_pairs",
]
