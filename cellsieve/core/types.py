"""Typed input and result containers for cellsieve core operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

import numpy as np
import pandas as pd

from cellsieve.errors import InvalidInputError


@dataclass(frozen=True)
class MetricTable:
    """Per-cell QC metrics: one entry per cell for every field.

    - `subset_sums`: counts falling in each named gene subset (e.g. "Mito").
    - `subset_percentages`: `subset_sums / total_count * 100`, NaN where the
      total is zero.
    """

    cell_ids: pd.Index
    total_count: np.ndarray
    detected_features: np.ndarray
    subset_sums: Mapping[str, np.ndarray] = field(default_factory=dict)
    subset_percentages: Mapping[str, np.ndarray] = field(default_factory=dict)

    def __post_init__(self) -> None:
        n = len(self.cell_ids)
        for name, arr in (
            ("total_count", self.total_count),
            ("detected_features", self.detected_features),
        ):
            if np.asarray(arr).shape != (n,):
                raise InvalidInputError(f"{name} must have one entry per cell ({n}).")
        for name, arr in {**self.subset_sums, **self.subset_percentages}.items():
            if np.asarray(arr).shape != (n,):
                raise InvalidInputError(f"Subset '{name}' must have one entry per cell ({n}).")
        for name, pct in self.subset_percentages.items():
            pct_arr = np.asarray(pct, dtype=float)
            finite = pct_arr[np.isfinite(pct_arr)]
            if np.any((finite < 0.0) | (finite > 100.0 + 1e-9)):
                raise InvalidInputError(f"Subset '{name}' percentages must lie in [0, 100].")

    @property
    def n_cells(self) -> int:
        return len(self.cell_ids)

    @property
    def subset_names(self) -> tuple[str, ...]:
        return tuple(self.subset_percentages.keys())

    def to_frame(self) -> pd.DataFrame:
        data: dict[str, Any] = {
            "sum": np.asarray(self.total_count),
            "detected": np.asarray(self.detected_features),
        }
        for name in self.subset_names:
            if name in self.subset_sums:
                data[f"subsets_{name}_sum"] = np.asarray(self.subset_sums[name])
            data[f"subsets_{name}_percent"] = np.asarray(self.subset_percentages[name])
        return pd.DataFrame(data, index=pd.Index(self.cell_ids))

    @classmethod
    def from_frame(cls, df: pd.DataFrame) -> "MetricTable":
        """Rebuild a table from `to_frame()`-style columns."""
        missing = [c for c in ("sum", "detected") if c not in df.columns]
        if missing:
            raise InvalidInputError(f"Metric frame is missing columns: {', '.join(missing)}")
        sums: dict[str, np.ndarray] = {}
        pcts: dict[str, np.ndarray] = {}
        for col in df.columns:
            if col.startswith("subsets_") and col.endswith("_percent"):
                name = col[len("subsets_") : -len("_percent")]
                pcts[name] = df[col].to_numpy(dtype=float)
                sum_col = f"subsets_{name}_sum"
                if sum_col in df.columns:
                    sums[name] = df[sum_col].to_numpy(dtype=float)
        return cls(
            cell_ids=pd.Index(df.index),
            total_count=df["sum"].to_numpy(),
            detected_features=df["detected"].to_numpy(),
            subset_sums=sums,
            subset_percentages=pcts,
        )


@dataclass(frozen=True)
class BatchThresholds:
    """Thresholds estimated for one batch.

    `lower`/`upper` are on the original scale of the values (back-transformed
    when a log transform was used) and are None for directions not requested.
    `median` and `mad` are on the transformed scale. `degenerate` marks a
    zero-width threshold (MAD of zero and no positive `min_diff`).
    """

    batch: Any
    median: float
    mad: float
    lower: float | None
    upper: float | None
    n_used: int
    degenerate: bool


@dataclass(frozen=True)
class OutlierResult:
    """Output of `detect_outliers`."""

    flags: np.ndarray
    thresholds: dict[Any, BatchThresholds]
    direction: str
    log_transform: bool
    n_mads: float
    min_diff: float | None = None

    @property
    def n_flagged(self) -> int:
        return int(np.sum(self.flags))

    @property
    def degenerate_batches(self) -> list[Any]:
        return [b for b, thr in self.thresholds.items() if thr.degenerate]

    def thresholds_frame(self) -> pd.DataFrame:
        rows = [
            {
                "batch": thr.batch,
                "median": thr.median,
                "mad": thr.mad,
                "lower": np.nan if thr.lower is None else thr.lower,
                "upper": np.nan if thr.upper is None else thr.upper,
                "n_used": thr.n_used,
                "degenerate": thr.degenerate,
            }
            for thr in self.thresholds.values()
        ]
        return pd.DataFrame(rows).set_index("batch")


@dataclass(frozen=True)
class QuickQCResult:
    """Per-metric outlier calls plus their union."""

    cell_ids: pd.Index
    per_metric: dict[str, OutlierResult]
    discard: np.ndarray

    def to_frame(self) -> pd.DataFrame:
        data = {name: res.flags for name, res in self.per_metric.items()}
        data["discard"] = self.discard
        return pd.DataFrame(data, index=pd.Index(self.cell_ids))

    def summary(self) -> dict[str, int]:
        out = {name: res.n_flagged for name, res in self.per_metric.items()}
        out["discard"] = int(np.sum(self.discard))
        return out


@dataclass(frozen=True)
class BarcodeRanks:
    """Barcode-rank curve and its knee/inflection totals (NaN when undetermined)."""

    rank: np.ndarray
    total: np.ndarray
    fitted: np.ndarray
    knee: float
    inflection: float


@dataclass(frozen=True)
class AmbientTestResult:
    """Output of `ambient_test`.

    - `table`: indexed by barcode with columns `total`, `p_value`, `fdr`,
      `limited`. NaN p-values/FDR mark untested barcodes.
    - `ambient_profile`: ambient gene proportions used for the test.
    """

    table: pd.DataFrame
    ambient_profile: pd.Series
    lower: int
    n_iter: int
    retain: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def is_cell(self, fdr_threshold: float = 0.001) -> pd.Series:
        fdr = self.table["fdr"]
        return (fdr <= float(fdr_threshold)).fillna(False).astype(bool)


@dataclass(frozen=True)
class ClusterDoubletResult:
    """Output of `find_doublet_clusters`.

    - `table`: one row per query cluster, ranked by ascending `n_de`.
    - `all_pairs`: every (query, source1, source2) combination considered.
    """

    table: pd.DataFrame
    all_pairs: pd.DataFrame
    threshold: float

    @property
    def empty(self) -> bool:
        return self.table.empty

    def pairs_for(self, cluster: Any) -> pd.DataFrame:
        sub = self.all_pairs[self.all_pairs["query"] == str(cluster)]
        return sub.sort_values(["n_de", "source1", "source2"], kind="mergesort")


@dataclass(frozen=True)
class DoubletDensityResult:
    """Output of `compute_doublet_density`; `scores` has one value per cell."""

    scores: np.ndarray
    pairs: np.ndarray
    bandwidth: float
    n_sim: int
    n_dim: int
    metadata: dict[str, Any] = field(default_factory=dict)
