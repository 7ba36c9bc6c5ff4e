"""End-to-end QC on an AnnData object: cell calling, outlier QC and doublets."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import anndata as ad
import numpy as np
import pandas as pd

from cellsieve.config import QCConfig
from cellsieve.core.ambient import ambient_test, barcode_ranks
from cellsieve.core.doublet_cluster import find_doublet_clusters
from cellsieve.core.doublet_density import compute_doublet_density
from cellsieve.core.metrics import gene_prefix_mask, per_cell_qc_metrics
from cellsieve.core.outliers import quick_per_cell_qc
from cellsieve.core.types import (
    AmbientTestResult,
    ClusterDoubletResult,
    DoubletDensityResult,
    QuickQCResult,
)
from cellsieve.pipeline.io import ensure_dir, write_json, write_table
from cellsieve.utils import as_count_matrix, row_sums

MITO_SUBSET = "Mito"


@dataclass
class QCPipelineResult:
    """AnnData after QC plus the component results and written files."""

    adata: ad.AnnData
    summary: dict[str, Any]
    outputs: dict[str, str] = field(default_factory=dict)
    ambient: AmbientTestResult | None = None
    qc: QuickQCResult | None = None
    doublet_density: DoubletDensityResult | None = None
    doublet_clusters: ClusterDoubletResult | None = None


def _obs_column(adata: ad.AnnData, key: str | None) -> np.ndarray | None:
    if key is None:
        return None
    if key not in adata.obs.columns:
        raise KeyError(f"adata.obs['{key}'] not found.")
    return adata.obs[key].astype(object).to_numpy()


def _get_counts(adata: ad.AnnData, layer: str | None):
    if layer is None:
        return adata.X
    if layer not in adata.layers:
        raise KeyError(f"adata.layers['{layer}'] not found.")
    return adata.layers[layer]


def _uns_safe(value: Any) -> Any:
    """Drop None entries so the summary can be written to h5ad."""
    if isinstance(value, dict):
        return {str(k): _uns_safe(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return value


def _thresholds_table(qc: QuickQCResult) -> pd.DataFrame:
    frames = []
    for name, res in qc.per_metric.items():
        frame = res.thresholds_frame().reset_index()
        frame.insert(0, "metric", name)
        frames.append(frame)
    return pd.concat(frames, ignore_index=True)


def run_qc_pipeline(
    adata: ad.AnnData,
    config: QCConfig | Mapping[str, Any],
    logger: logging.Logger | None = None,
) -> QCPipelineResult:
    """Run cell calling, per-cell QC and doublet scoring on ``adata``.

    Per-cell results are written to ``adata.obs``; when cell calling is
    enabled the returned AnnData is a copy restricted to called cells and the
    input only receives the ambient test columns. Tables, a JSON summary and
    figures are written when ``config.outdir`` is set.

    Args:
        adata: Cells (or raw barcodes) x genes AnnData holding raw counts in
            ``X`` or in ``config.layer``.
        config: `QCConfig` or a mapping accepted by `QCConfig.from_dict`.
        logger: Logger for stage summaries; the module logger by default.

    Returns:
        QCPipelineResult with the processed AnnData and a summary dict.
    """
    cfg = config if isinstance(config, QCConfig) else QCConfig.from_dict(config)
    log = logger if logger is not None else logging.getLogger(__name__)
    outdir = Path(cfg.outdir) if cfg.outdir else None
    if outdir is not None:
        ensure_dir(outdir)
    make_plots = bool(cfg.make_plots) and outdir is not None
    if make_plots:
        from cellsieve.plotting import (
            apply_plot_style,
            plot_barcode_ranks,
            plot_doublet_scores,
            plot_outlier_histograms,
            plot_pvalue_qq,
        )

        apply_plot_style()

    counts = as_count_matrix(_get_counts(adata, cfg.layer))
    summary: dict[str, Any] = {
        "n_barcodes_input": int(adata.n_obs),
        "n_genes": int(adata.n_vars),
        "seed": cfg.seed,
    }
    outputs: dict[str, str] = {}
    result = QCPipelineResult(adata=adata, summary=summary, outputs=outputs)

    work = adata
    if cfg.cell_calling.enabled:
        cc = cfg.cell_calling
        ambient = ambient_test(
            counts,
            lower=cc.lower,
            n_iter=cc.n_iter,
            test_ambient=cc.test_ambient,
            seed=cfg.seed,
            retain=cc.retain,
            ignore=cc.ignore,
            barcodes=adata.obs_names,
            genes=adata.var_names,
            n_jobs=cc.n_jobs,
            good_turing=cc.good_turing,
        )
        is_cell = ambient.is_cell(cc.fdr_threshold).to_numpy()
        adata.obs["ambient_p_value"] = ambient.table["p_value"].to_numpy()
        adata.obs["ambient_fdr"] = ambient.table["fdr"].to_numpy()
        adata.obs["ambient_limited"] = ambient.table["limited"].to_numpy()
        adata.obs["is_cell"] = is_cell
        summary["cell_calling"] = {
            **ambient.metadata,
            "lower": ambient.lower,
            "n_iter": ambient.n_iter,
            "retain": ambient.retain,
            "fdr_threshold": cc.fdr_threshold,
            "n_cells_called": int(is_cell.sum()),
        }
        log.info("Cell calling: %d of %d barcodes called as cells.", int(is_cell.sum()), adata.n_obs)
        result.ambient = ambient
        if outdir is not None:
            outputs["ambient_test_csv"] = write_table(outdir / "ambient_test.csv", ambient.table).as_posix()
        if make_plots:
            ranks = barcode_ranks(ambient.table["total"].to_numpy(), lower=cc.lower)
            outputs["barcode_ranks_png"] = (outdir / "barcode_ranks.png").as_posix()
            plot_barcode_ranks(ranks, outputs["barcode_ranks_png"])
            if cc.test_ambient:
                pool_p = ambient.table.loc[ambient.table["total"] <= cc.lower, "p_value"]
                outputs["ambient_qq_png"] = (outdir / "ambient_pvalue_qq.png").as_posix()
                plot_pvalue_qq(pool_p.to_numpy(), outputs["ambient_qq_png"])
        work = adata[is_cell].copy()
        counts = counts[np.flatnonzero(is_cell)]

    n_cells = work.n_obs
    subsets: dict[str, np.ndarray] = {}
    if cfg.mito_prefix:
        mito = gene_prefix_mask(work.var_names, cfg.mito_prefix)
        if mito.any():
            subsets[MITO_SUBSET] = mito
        else:
            log.info("No genes start with '%s'; skipping the mitochondrial subset.", cfg.mito_prefix)
    metrics = per_cell_qc_metrics(counts, subsets=subsets, cell_ids=work.obs_names)
    for col, values in metrics.to_frame().items():
        work.obs[f"qc_{col}"] = values.to_numpy()

    nonzero = row_sums(counts) > 0
    discard = ~nonzero
    if discard.any():
        log.info("%d cells with zero counts are discarded before outlier QC.", int(discard.sum()))
    if cfg.qc.enabled:
        batch = _obs_column(work, cfg.batch_key)
        idx = np.flatnonzero(nonzero)
        kept_metrics = per_cell_qc_metrics(counts[idx], subsets=subsets, cell_ids=work.obs_names[idx])
        qc = quick_per_cell_qc(
            kept_metrics,
            batch=None if batch is None else batch[idx],
            n_mads=cfg.qc.n_mads,
        )
        for name, res in qc.per_metric.items():
            col = np.zeros(n_cells, dtype=bool)
            col[idx] = res.flags
            work.obs[name] = col
            if res.degenerate_batches:
                log.warning("%s: zero-width threshold in batch(es) %s.", name, res.degenerate_batches)
        discard[idx] |= qc.discard
        summary["qc"] = {
            **qc.summary(),
            "degenerate": {name: [str(b) for b in res.degenerate_batches] for name, res in qc.per_metric.items()},
        }
        result.qc = qc
        if outdir is not None:
            outputs["qc_thresholds_csv"] = write_table(
                outdir / "qc_thresholds.csv", _thresholds_table(qc)
            ).as_posix()
        if make_plots:
            outputs["qc_outliers_png"] = (outdir / "qc_outliers.png").as_posix()
            plot_outlier_histograms(qc, kept_metrics, outputs["qc_outliers_png"])
    work.obs["cellsieve_discard"] = discard
    summary["n_cells"] = int(n_cells)
    summary["n_discarded"] = int(discard.sum())
    log.info("QC: discarding %d of %d cells.", int(discard.sum()), n_cells)

    if cfg.qc.drop_discarded:
        keep_idx = np.flatnonzero(~discard)
        work = work[keep_idx].copy()
        counts = counts[keep_idx]
        discard = np.zeros(work.n_obs, dtype=bool)
        n_cells = work.n_obs
    keep_idx = np.flatnonzero(~discard)

    if cfg.doublet_density.enabled:
        dd = cfg.doublet_density
        density = compute_doublet_density(
            counts[keep_idx],
            n_dim=dd.n_dim,
            seed=cfg.seed,
            k=dd.k,
            n_sim=dd.n_sim,
            allow_self_pairs=dd.allow_self_pairs,
            n_top_genes=dd.n_top_genes,
        )
        scores = np.full(n_cells, np.nan)
        scores[keep_idx] = density.scores
        work.obs["doublet_density"] = scores
        summary["doublet_density"] = {
            "bandwidth": density.bandwidth,
            "n_sim": density.n_sim,
            "n_dim": density.n_dim,
            "median_score": float(np.median(density.scores)),
        }
        result.doublet_density = density
        if make_plots:
            embedding = work.obsm["X_umap"][keep_idx] if "X_umap" in work.obsm else None
            outputs["doublet_density_png"] = (outdir / "doublet_density.png").as_posix()
            plot_doublet_scores(density.scores, outputs["doublet_density_png"], embedding=embedding)

    if cfg.doublet_cluster.enabled and cfg.cluster_key is None:
        log.info("cluster_key not set; skipping cluster-based doublet detection.")
    elif cfg.doublet_cluster.enabled:
        dc = cfg.doublet_cluster
        labels = _obs_column(work, cfg.cluster_key)
        clusters = find_doublet_clusters(
            counts[keep_idx],
            labels[keep_idx],
            threshold=dc.threshold,
            tie_break=dc.tie_break,
            n_mads=dc.n_mads,
        )
        flagged = set(clusters.table.index[clusters.table["outlier"].astype(bool)]) if not clusters.empty else set()
        work.obs["doublet_cluster_outlier"] = pd.Series(labels).astype(str).isin(flagged).to_numpy() & ~discard
        summary["doublet_clusters"] = {
            "n_clusters": int(len(clusters.table)),
            "outlier_clusters": sorted(flagged),
            "top_candidate": None if clusters.empty else str(clusters.table.index[0]),
        }
        result.doublet_clusters = clusters
        work.uns.setdefault("cellsieve", {})
        if not clusters.empty:
            work.uns["cellsieve"]["doublet_clusters"] = clusters.table.copy()
        if outdir is not None:
            outputs["doublet_clusters_csv"] = write_table(
                outdir / "doublet_clusters.csv", clusters.table
            ).as_posix()
            outputs["doublet_cluster_pairs_csv"] = write_table(
                outdir / "doublet_cluster_pairs.csv", clusters.all_pairs
            ).as_posix()

    if outdir is not None:
        outputs["qc_obs_csv"] = write_table(outdir / "qc_obs.csv", work.obs).as_posix()
        outputs["summary_json"] = (outdir / "summary.json").as_posix()
        summary["outputs"] = dict(outputs)
        write_json(outdir / "summary.json", summary)

    work.uns.setdefault("cellsieve", {})
    work.uns["cellsieve"]["summary"] = _uns_safe(summary)
    result.adata = work
    return result
