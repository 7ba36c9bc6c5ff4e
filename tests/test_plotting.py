from __future__ import annotations

import os
import warnings
from pathlib import Path

import matplotlib
import numpy as np
import pandas as pd

os.environ.setdefault("MPLBACKEND", "Agg")
matplotlib.use("Agg", force=True)

from cellsieve.core.ambient import barcode_ranks
from cellsieve.core.outliers import quick_per_cell_qc
from cellsieve.core.types import MetricTable
from cellsieve.plotting import (
    plot_barcode_ranks,
    plot_doublet_scores,
    plot_outlier_histograms,
    plot_pvalue_qq,
)


def _metrics(n: int = 40) -> MetricTable:
    rng = np.random.default_rng(0)
    totals = rng.integers(800, 1200, size=n)
    pct = rng.uniform(0.0, 5.0, size=n)
    pct[0] = np.nan
    return MetricTable(
        cell_ids=pd.Index([f"c{i}" for i in range(n)]),
        total_count=totals,
        detected_features=rng.integers(300, 400, size=n),
        subset_percentages={"Mito": pct},
    )


def test_outlier_histograms_write_png(tmp_path: Path):
    metrics = _metrics()
    qc = quick_per_cell_qc(metrics)
    out = tmp_path / "figs" / "qc.png"
    fig = plot_outlier_histograms(qc, metrics, out)
    assert out.exists()
    assert len(fig.axes) == 3


def test_barcode_rank_plot_handles_missing_knee(tmp_path: Path):
    ranks = barcode_ranks(np.array([500.0, 500.0, 20.0, 10.0]), lower=100)
    out = tmp_path / "ranks.png"
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", UserWarning)
        plot_barcode_ranks(ranks, out)
    assert out.exists()


def test_qq_and_score_plots(tmp_path: Path):
    rng = np.random.default_rng(1)
    fig = plot_pvalue_qq(np.r_[rng.uniform(size=100), np.nan], tmp_path / "qq.png")
    assert (tmp_path / "qq.png").exists()
    assert fig.axes[0].get_xlabel() == "Expected p"

    scores = rng.gamma(2.0, 0.5, size=50)
    fig = plot_doublet_scores(scores, tmp_path / "scores.png", embedding=rng.normal(size=(50, 2)))
    assert (tmp_path / "scores.png").exists()
    assert len(fig.axes) == 3
