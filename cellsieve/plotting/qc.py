"""Diagnostic figures for QC thresholds, cell calling and doublet scores."""

from __future__ import annotations

import math
from pathlib import Path
from typing import Any

import matplotlib.axes
import matplotlib.figure
import matplotlib.pyplot as plt
import numpy as np

from cellsieve.core.types import BarcodeRanks, MetricTable, OutlierResult, QuickQCResult
from cellsieve.plotting.styles import DEFAULT_PLOT_STYLE, PlotStyle
from cellsieve.plotting.utils import save_figure


def _metric_values(metrics: MetricTable, name: str) -> tuple[np.ndarray, str]:
    if name == "low_lib_size":
        return np.asarray(metrics.total_count, dtype=float), "Total count"
    if name == "low_n_features":
        return np.asarray(metrics.detected_features, dtype=float), "Detected genes"
    subset = name[len("high_") : -len("_percent")]
    return np.asarray(metrics.subset_percentages[subset], dtype=float), f"{subset} %"


def _draw_thresholds(ax: matplotlib.axes.Axes, result: OutlierResult, style: PlotStyle) -> None:
    for thr in result.thresholds.values():
        for value in (thr.lower, thr.upper):
            if value is not None and np.isfinite(value):
                ax.axvline(value, color=style.color_threshold, linestyle="--", linewidth=1.0)


def plot_outlier_histograms(
    qc: QuickQCResult,
    metrics: MetricTable,
    out_path: str | Path | None = None,
    *,
    style: PlotStyle = DEFAULT_PLOT_STYLE,
) -> matplotlib.figure.Figure:
    """One histogram per QC metric with kept/flagged cells and thresholds."""
    names = list(qc.per_metric)
    ncols = min(3, len(names))
    nrows = int(math.ceil(len(names) / ncols))
    fig, axes = plt.subplots(
        nrows,
        ncols,
        figsize=(style.figsize_panel[0] * ncols, style.figsize_panel[1] * nrows),
        squeeze=False,
    )
    for ax, name in zip(axes.ravel(), names):
        result = qc.per_metric[name]
        values, label = _metric_values(metrics, name)
        finite = np.isfinite(values)
        log_axis = result.log_transform
        if log_axis:
            finite &= values > 0
        kept = values[finite & ~result.flags]
        flagged = values[finite & result.flags]
        pooled = values[finite]
        if pooled.size:
            lo, hi = float(pooled.min()), float(pooled.max())
            if log_axis:
                bins = np.logspace(math.log10(lo), math.log10(max(hi, lo * 1.01)), style.hist_bins)
            else:
                bins = np.linspace(lo, max(hi, lo + 1e-9), style.hist_bins)
            ax.hist(kept, bins=bins, color=style.color_kept, alpha=0.8, label="kept")
            if flagged.size:
                ax.hist(flagged, bins=bins, color=style.color_flagged, alpha=0.8, label="flagged")
        if log_axis:
            ax.set_xscale("log")
        _draw_thresholds(ax, result, style)
        ax.set_xlabel(label)
        ax.set_ylabel("Cells")
        ax.set_title(f"{name} ({result.n_flagged})", fontsize=style.title_fontsize)
        ax.legend(frameon=False, fontsize=style.legend_fontsize)
    for ax in axes.ravel()[len(names) :]:
        ax.axis("off")
    fig.tight_layout()
    if out_path is not None:
        save_figure(fig, out_path, style=style)
    return fig


def plot_barcode_ranks(
    ranks: BarcodeRanks,
    out_path: str | Path | None = None,
    *,
    style: PlotStyle = DEFAULT_PLOT_STYLE,
) -> matplotlib.figure.Figure:
    """Log-log barcode-rank curve with knee and inflection marked."""
    fig, ax = plt.subplots(figsize=style.figsize_ranks)
    pos = ranks.total > 0
    order = np.argsort(ranks.rank[pos])
    ax.plot(ranks.rank[pos][order], ranks.total[pos][order], color="black", linewidth=1.0)
    fitted = np.isfinite(ranks.fitted)
    if np.any(fitted):
        fit_order = np.argsort(ranks.rank[fitted])
        ax.plot(
            ranks.rank[fitted][fit_order],
            ranks.fitted[fitted][fit_order],
            color=style.color_kept,
            linewidth=1.5,
            label="fitted",
        )
    if np.isfinite(ranks.knee):
        ax.axhline(ranks.knee, color=style.color_flagged, linestyle="--", label=f"knee {ranks.knee:.0f}")
    if np.isfinite(ranks.inflection):
        ax.axhline(
            ranks.inflection,
            color=style.color_threshold,
            linestyle=":",
            label=f"inflection {ranks.inflection:.0f}",
        )
    ax.set_xscale("log")
    ax.set_yscale("log")
    ax.set_xlabel("Barcode rank")
    ax.set_ylabel("Total count")
    ax.legend(frameon=False, fontsize=style.legend_fontsize)
    fig.tight_layout()
    if out_path is not None:
        save_figure(fig, out_path, style=style)
    return fig


def plot_pvalue_qq(
    pvals: Any,
    out_path: str | Path | None = None,
    title: str = "Ambient barcode p-values",
    *,
    style: PlotStyle = DEFAULT_PLOT_STYLE,
) -> matplotlib.figure.Figure:
    """Uniform QQ plot; a calibrated test stays on the diagonal."""
    p = np.asarray(pvals, dtype=float).ravel()
    p = np.sort(p[np.isfinite(p)])
    fig, ax = plt.subplots(figsize=style.figsize_qq)
    if p.size:
        expected = np.arange(1, p.size + 1) / (p.size + 1)
        ax.scatter(expected, p, s=style.s_point, color="black")
    ax.plot([0, 1], [0, 1], color="red", linestyle="--")
    ax.set_title(title)
    ax.set_xlabel("Expected p")
    ax.set_ylabel("Observed p")
    fig.tight_layout()
    if out_path is not None:
        save_figure(fig, out_path, style=style)
    return fig


def plot_doublet_scores(
    scores: Any,
    out_path: str | Path | None = None,
    embedding: np.ndarray | None = None,
    *,
    style: PlotStyle = DEFAULT_PLOT_STYLE,
) -> matplotlib.figure.Figure:
    """Histogram of log1p doublet scores, plus an embedding panel when given."""
    s = np.asarray(scores, dtype=float).ravel()
    finite = np.isfinite(s)
    ncols = 1 if embedding is None else 2
    fig, axes = plt.subplots(
        1,
        ncols,
        figsize=(style.figsize_scores[0] * ncols, style.figsize_scores[1]),
        squeeze=False,
    )
    ax = axes[0, 0]
    ax.hist(np.log1p(s[finite]), bins=style.hist_bins, color=style.color_kept)
    ax.set_xlabel("log1p(doublet score)")
    ax.set_ylabel("Cells")
    ax.set_title("Simulated-doublet density")
    if embedding is not None:
        xy = np.asarray(embedding, dtype=float)[:, :2]
        ax2 = axes[0, 1]
        sc = ax2.scatter(
            xy[finite, 0],
            xy[finite, 1],
            c=np.log1p(s[finite]),
            cmap="viridis",
            s=style.s_point,
            alpha=style.alpha_point,
            linewidths=0.0,
            rasterized=True,
        )
        fig.colorbar(sc, ax=ax2, shrink=0.8, pad=0.02)
        ax2.set_xticks([])
        ax2.set_yticks([])
        ax2.set_title("Doublet score")
    fig.tight_layout()
    if out_path is not None:
        save_figure(fig, out_path, style=style)
    return fig
