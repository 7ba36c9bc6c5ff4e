"""Shared plotting style settings for deterministic figure outputs."""

from __future__ import annotations

from dataclasses import dataclass

import matplotlib.pyplot as plt


@dataclass(frozen=True)
class PlotStyle:
    """Centralized plotting defaults used across QC figures."""

    dpi: int = 150
    figsize_panel: tuple[float, float] = (3.6, 3.2)
    figsize_ranks: tuple[float, float] = (5.0, 4.2)
    figsize_qq: tuple[float, float] = (4.0, 4.0)
    figsize_scores: tuple[float, float] = (5.0, 4.0)
    hist_bins: int = 50
    s_point: float = 6.0
    alpha_point: float = 0.7
    color_kept: str = "#4c72b0"
    color_flagged: str = "#c44e52"
    color_threshold: str = "#222222"
    legend_fontsize: int = 8
    axis_label_fontsize: int = 10
    title_fontsize: int = 11


DEFAULT_PLOT_STYLE = PlotStyle()


def apply_plot_style(style: PlotStyle = DEFAULT_PLOT_STYLE) -> None:
    """Apply deterministic matplotlib rcParams for pipeline plots."""
    plt.rcParams.update(
        {
            "figure.dpi": style.dpi,
            "savefig.dpi": style.dpi,
            "savefig.facecolor": "white",
            "font.family": "DejaVu Sans",
            "axes.titlesize": style.title_fontsize,
            "axes.labelsize": style.axis_label_fontsize,
            "legend.fontsize": style.legend_fontsize,
            "axes.grid": False,
        }
    )
