from __future__ import annotations

import json
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

from cellsieve.cli import OUTPUT_H5AD, main
from cellsieve.errors import DegenerateStatisticWarning, InvalidConfigurationError


def _write_tiny_h5ad(path: Path) -> None:
    rng = np.random.default_rng(0)
    lam_a = np.r_[np.full(10, 8.0), np.full(10, 1.0)]
    lam_b = lam_a[::-1]
    X = np.vstack([rng.poisson(lam_a, size=(30, 20)), rng.poisson(lam_b, size=(30, 20))]).astype(float)
    obs = pd.DataFrame(index=[f"c{i}" for i in range(60)])
    var = pd.DataFrame(index=["MT-CO1"] + [f"G{i}" for i in range(19)])
    ad.AnnData(X=X, obs=obs, var=var).write_h5ad(path)


def test_cli_runs_pipeline_and_writes_h5ad(tmp_path: Path, capsys):
    h5ad = tmp_path / "tiny.h5ad"
    _write_tiny_h5ad(h5ad)
    cfg_path = tmp_path / "cfg.json"
    cfg_path.write_text(
        json.dumps(
            {
                "h5ad_path": h5ad.as_posix(),
                "outdir": (tmp_path / "out").as_posix(),
                "seed": 0,
                "doublet_density": {"n_dim": 3, "k": 5, "n_sim": 200},
            }
        ),
        encoding="utf-8",
    )
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", DegenerateStatisticWarning)
        rc = main(["--config", cfg_path.as_posix(), "--no-plots"])
    assert rc == 0

    out_h5ad = tmp_path / "out" / OUTPUT_H5AD
    assert out_h5ad.exists()
    result = ad.read_h5ad(out_h5ad)
    assert "doublet_density" in result.obs.columns
    assert "cellsieve_discard" in result.obs.columns
    assert (tmp_path / "out" / "logs" / "cellsieve_qc.log").exists()
    assert not (tmp_path / "out" / "qc_outliers.png").exists()
    assert "n_cells=60" in capsys.readouterr().out


def test_cli_requires_input_path(tmp_path: Path):
    cfg_path = tmp_path / "cfg.json"
    cfg_path.write_text(json.dumps({"outdir": tmp_path.as_posix(), "seed": 0}), encoding="utf-8")
    with pytest.raises(InvalidConfigurationError, match="h5ad_path"):
        main(["--config", cfg_path.as_posix()])


def test_cli_missing_h5ad(tmp_path: Path):
    cfg_path = tmp_path / "cfg.json"
    cfg_path.write_text(json.dumps({"seed": 0}), encoding="utf-8")
    with pytest.raises(FileNotFoundError, match="not found"):
        main(
            [
                "--config",
                cfg_path.as_posix(),
                "--h5ad",
                (tmp_path / "missing.h5ad").as_posix(),
                "--outdir",
                (tmp_path / "out").as_posix(),
            ]
        )
