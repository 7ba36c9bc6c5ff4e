"""Diagnostic plots for cellsieve results."""

from cellsieve.plotting.qc import (
    plot_barcode_ranks,
    plot_doublet_scores,
    plot_outlier_histograms,
    plot_pvalue_qq,
)
from cellsieve.plotting.styles import DEFAULT_PLOT_STYLE, PlotStyle, apply_plot_style
from cellsieve.plotting.utils import save_figure

__all__ = [
    "PlotStyle",
    "DEFAULT_PLOT_STYLE",
    "apply_plot_style",
    "save_figure",
    "plot_outlier_histograms",
    "plot_barcode_ranks",
    "plot_pvalue_qq",
    "plot_doublet_scores",
]
