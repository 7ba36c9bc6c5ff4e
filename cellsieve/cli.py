"""Command-line entry point for the cellsieve QC pipeline."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Iterable

import scanpy as sc

from cellsieve.config import QCConfig, load_json_config
from cellsieve.errors import InvalidConfigurationError
from cellsieve.pipeline.io import setup_logger
from cellsieve.pipeline.run import run_qc_pipeline

OUTPUT_H5AD = "cellsieve_qc.h5ad"


def _read_adata(h5ad_path: str):
    path = Path(h5ad_path)
    if not path.exists():
        raise FileNotFoundError(f"Input file '{h5ad_path}' not found.")
    return sc.read_h5ad(path)


def main(argv: Iterable[str] | None = None) -> int:
    """Run the QC pipeline from a JSON config.

    Args:
        argv: Command-line arguments (if None, uses sys.argv).

    Returns:
        Exit code (0 for success).
    """
    parser = argparse.ArgumentParser(description="cellsieve single-cell QC pipeline")
    parser.add_argument("--config", required=True, help="Path to a .json pipeline config")
    parser.add_argument("--h5ad", default=None, help="Override h5ad_path from the config")
    parser.add_argument("--outdir", default=None, help="Override outdir from the config")
    parser.add_argument("--seed", type=int, default=None, help="Override seed from the config")
    parser.add_argument("--no-plots", action="store_true", help="Skip diagnostic figures")
    args = parser.parse_args(list(argv) if argv is not None else None)

    raw = load_json_config(args.config)
    if args.h5ad is not None:
        raw["h5ad_path"] = args.h5ad
    if args.outdir is not None:
        raw["outdir"] = args.outdir
    if args.seed is not None:
        raw["seed"] = args.seed
    if args.no_plots:
        raw["make_plots"] = False
    cfg = QCConfig.from_dict(raw)
    if not cfg.h5ad_path:
        raise InvalidConfigurationError("h5ad_path must be set in the config or with --h5ad.")
    if not cfg.outdir:
        raise InvalidConfigurationError("outdir must be set in the config or with --outdir.")

    outdir = Path(cfg.outdir)
    logger = setup_logger(outdir / "logs" / "cellsieve_qc.log", "cellsieve")
    logger.info("Reading %s", cfg.h5ad_path)
    adata = _read_adata(cfg.h5ad_path)

    result = run_qc_pipeline(adata, cfg, logger=logger)
    out_h5ad = outdir / OUTPUT_H5AD
    result.adata.write_h5ad(out_h5ad)
    logger.info("Wrote %s (%d cells)", out_h5ad, result.adata.n_obs)

    print(f"n_cells={result.summary['n_cells']}")
    print(f"n_discarded={result.summary['n_discarded']}")
    print(f"output={out_h5ad.as_posix()}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
