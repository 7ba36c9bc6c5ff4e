"""cellsieve public API."""

from cellsieve._version import __version__
from cellsieve.core.ambient import ambient_test, barcode_ranks, estimate_ambient_profile
from cellsieve.core.doublet_cluster import find_doublet_clusters
from cellsieve.core.doublet_density import compute_doublet_density
from cellsieve.core.metrics import per_cell_qc_metrics
from cellsieve.core.outliers import detect_outliers, quick_per_cell_qc
from cellsieve.core.types import MetricTable
from cellsieve.errors import DegenerateStatisticWarning, InvalidConfigurationError, InvalidInputError


def run_qc_pipeline(*args, **kwargs):
    """Lazy wrapper to avoid importing plotting dependencies at import time."""
    from cellsieve.pipeline.run import run_qc_pipeline as _run_qc_pipeline

    return _run_qc_pipeline(*args, **kwargs)


__all__ = [
    "__version__",
    "MetricTable",
    "per_cell_qc_metrics",
    "detect_outliers",
    "quick_per_cell_qc",
    "estimate_ambient_profile",
    "ambient_test",
    "barcode_ranks",
    "find_doublet_clusters",
    "compute_doublet_density",
    "run_qc_pipeline",
    "InvalidInputError",
    "InvalidConfigurationError",
    "DegenerateStatisticWarning",
]
