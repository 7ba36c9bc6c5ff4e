from __future__ import annotations

import json
import logging
import os
import warnings
from pathlib import Path

import anndata as ad
import matplotlib
import numpy as np
import pandas as pd
import pytest

os.environ.setdefault("MPLBACKEND", "Agg")
matplotlib.use("Agg", force=True)

from cellsieve import run_qc_pipeline
from cellsieve.errors import DegenerateStatisticWarning, InvalidConfigurationError


def _clustered_adata(seed: int = 0) -> ad.AnnData:
    rng = np.random.default_rng(seed)
    high, low = 20.0, 1.0
    lam_a = np.r_[np.full(20, high), np.full(40, low), np.full(3, low)]
    lam_b = np.r_[np.full(20, low), np.full(20, high), np.full(20, low), np.full(3, low)]
    lam_d = np.r_[np.full(40, low), np.full(20, high), np.full(3, low)]
    X = np.vstack(
        [
            rng.poisson(lam_a, size=(50, 63)),
            rng.poisson(lam_b, size=(50, 63)),
            rng.poisson(lam_a + lam_b, size=(20, 63)),
            rng.poisson(lam_d, size=(50, 63)),
        ]
    ).astype(float)
    obs = pd.DataFrame(
        {
            "cluster": ["A"] * 50 + ["B"] * 50 + ["C"] * 20 + ["D"] * 50,
            "sample": ["s1", "s2"] * 85,
        },
        index=[f"cell{i}" for i in range(X.shape[0])],
    )
    var = pd.DataFrame(index=[f"G{i}" for i in range(60)] + ["MT-CO1", "MT-ND1", "MT-ATP6"])
    return ad.AnnData(X=X, obs=obs, var=var)


def _droplet_adata(seed: int = 0) -> ad.AnnData:
    rng = np.random.default_rng(seed)
    ambient = rng.dirichlet(np.full(20, 2.0))
    cell_profile = rng.dirichlet(np.full(20, 0.5))
    empties = np.vstack([rng.multinomial(t, ambient) for t in rng.integers(50, 101, size=300)])
    cells = np.vstack([rng.multinomial(500, cell_profile) for _ in range(10)])
    X = np.vstack([empties, cells]).astype(float)
    obs = pd.DataFrame(index=[f"bc{i}" for i in range(X.shape[0])])
    var = pd.DataFrame(index=["MT-CO1", "MT-ND1"] + [f"G{i}" for i in range(18)])
    return ad.AnnData(X=X, obs=obs, var=var)


def _base_config(outdir: Path) -> dict:
    return {
        "outdir": outdir.as_posix(),
        "seed": 0,
        "cluster_key": "cluster",
        "batch_key": "sample",
        "doublet_density": {"n_dim": 5, "k": 10, "n_sim": 500},
    }


def test_pipeline_on_clustered_cells(tmp_path: Path, caplog):
    caplog.set_level(logging.INFO)
    adata = _clustered_adata()
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", DegenerateStatisticWarning)
        result = run_qc_pipeline(adata, _base_config(tmp_path))

    out = result.adata
    assert out is adata
    for col in (
        "qc_sum",
        "qc_detected",
        "qc_subsets_Mito_percent",
        "low_lib_size",
        "low_n_features",
        "high_Mito_percent",
        "cellsieve_discard",
        "doublet_density",
        "doublet_cluster_outlier",
    ):
        assert col in out.obs.columns
    kept = ~out.obs["cellsieve_discard"].to_numpy()
    assert np.all(np.isfinite(out.obs["doublet_density"].to_numpy()[kept]))
    assert np.all(np.isnan(out.obs["doublet_density"].to_numpy()[~kept]))

    table = out.uns["cellsieve"]["doublet_clusters"]
    assert table.index[0] == "C"
    assert {table.iloc[0]["source1"], table.iloc[0]["source2"]} == {"A", "B"}
    is_c = (out.obs["cluster"] == "C").to_numpy()
    assert out.obs["doublet_cluster_outlier"].to_numpy()[is_c & kept].all()
    assert not out.obs["doublet_cluster_outlier"].to_numpy()[~is_c].any()

    summary = json.loads((tmp_path / "summary.json").read_text(encoding="utf-8"))
    assert summary["n_cells"] == 170
    assert summary["doublet_clusters"]["top_candidate"] == "C"
    assert set(summary["qc"]) >= {"low_lib_size", "low_n_features", "high_Mito_percent", "discard"}
    for name in (
        "qc_obs.csv",
        "qc_thresholds.csv",
        "doublet_clusters.csv",
        "doublet_cluster_pairs.csv",
        "qc_outliers.png",
        "doublet_density.png",
    ):
        assert (tmp_path / name).exists(), name
    thresholds = pd.read_csv(tmp_path / "qc_thresholds.csv")
    assert set(thresholds["batch"]) == {"s1", "s2"}
    assert "QC discard" in caplog.text

    out.write_h5ad(tmp_path / "roundtrip.h5ad")
    assert (tmp_path / "roundtrip.h5ad").exists()


def test_pipeline_calls_cells_from_raw_droplets(tmp_path: Path):
    adata = _droplet_adata()
    cfg = {
        "outdir": tmp_path.as_posix(),
        "seed": 1,
        "cell_calling": {"enabled": True, "n_iter": 100, "test_ambient": True, "fdr_threshold": 0.01},
        "doublet_density": {"enabled": False},
    }
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", DegenerateStatisticWarning)
        result = run_qc_pipeline(adata, cfg)

    assert int(adata.obs["is_cell"].sum()) == 10
    assert result.adata.n_obs == 10
    assert result.adata is not adata
    assert list(result.adata.obs_names) == [f"bc{i}" for i in range(300, 310)]
    assert result.ambient is not None
    assert result.doublet_density is None
    assert result.doublet_clusters is None
    assert result.summary["cell_calling"]["n_cells_called"] == 10
    for key in ("ambient_test_csv", "barcode_ranks_png", "ambient_qq_png", "summary_json"):
        assert Path(result.outputs[key]).exists(), key


def test_pipeline_without_outdir_writes_nothing(tmp_path: Path):
    adata = _clustered_adata(seed=1)
    cfg = {"seed": 0, "doublet_density": {"n_dim": 5, "k": 10, "n_sim": 300}, "doublet_cluster": {"enabled": False}}
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", DegenerateStatisticWarning)
        result = run_qc_pipeline(adata, cfg)
    assert result.outputs == {}
    assert "summary" in result.adata.uns["cellsieve"]
    assert list(tmp_path.iterdir()) == []


def test_pipeline_requires_seed_for_simulation():
    adata = _clustered_adata(seed=2)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", DegenerateStatisticWarning)
        with pytest.raises(InvalidConfigurationError, match="seed"):
            run_qc_pipeline(adata, {"doublet_density": {"n_dim": 5}})


def test_pipeline_missing_obs_key():
    adata = _clustered_adata(seed=3)
    with pytest.raises(KeyError, match="batch"):
        run_qc_pipeline(adata, {"seed": 0, "batch_key": "batch"})
