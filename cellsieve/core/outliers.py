"""Median/MAD outlier thresholds for per-cell QC metrics."""

from __future__ import annotations

import logging
import warnings
from typing import Any, Sequence

import numpy as np
import pandas as pd

from cellsieve.core.types import BatchThresholds, MetricTable, OutlierResult, QuickQCResult
from cellsieve.errors import DegenerateStatisticWarning, InvalidInputError
from cellsieve.stats.scoring import median_mad
from cellsieve.utils import as_bool_mask

logger = logging.getLogger(__name__)

DIRECTIONS = ("lower", "higher", "both")


def _normalize_direction(direction: str) -> str:
    key = str(direction).strip().lower()
    if key not in DIRECTIONS:
        raise InvalidInputError(f"direction must be one of {DIRECTIONS}; got '{direction}'.")
    return key


def _factorize_batch(batch: Any, n: int) -> tuple[np.ndarray, list[Any]]:
    if batch is None:
        return np.zeros(n, dtype=int), [None]
    labels = pd.Series(np.asarray(batch, dtype=object).ravel())
    if labels.size != n:
        raise InvalidInputError(f"batch length {labels.size} does not match {n} values.")
    if labels.isna().any():
        raise InvalidInputError("Every value needs a batch label; found missing labels.")
    codes, uniques = pd.factorize(labels, sort=True)
    return np.asarray(codes, dtype=int), list(uniques)


def _single_batch_thresholds(
    values: np.ndarray,
    estimate_mask: np.ndarray,
    *,
    batch_label: Any,
    direction: str,
    log_transform: bool,
    n_mads: float,
    min_diff: float | None,
) -> tuple[np.ndarray, BatchThresholds]:
    finite = np.isfinite(values)
    if log_transform:
        if np.any(values[finite] <= 0):
            raise InvalidInputError(
                f"Log transform requires positive values; batch '{batch_label}' "
                "contains zero or negative entries."
            )
        work = np.full(values.shape, np.nan)
        work[finite] = np.log(values[finite])
    else:
        work = values

    est = work[estimate_mask & finite]
    if est.size == 0:
        raise InvalidInputError(f"No finite values available to estimate thresholds in batch '{batch_label}'.")
    med, mad = median_mad(est)
    half = float(n_mads) * mad
    if min_diff is not None:
        half = max(half, float(min_diff))
    degenerate = half == 0.0

    lower_t = med - half if direction in ("lower", "both") else None
    upper_t = med + half if direction in ("higher", "both") else None

    flags = np.zeros(values.shape, dtype=bool)
    if lower_t is not None:
        flags[finite] |= work[finite] < lower_t
    if upper_t is not None:
        flags[finite] |= work[finite] > upper_t

    def _report(t: float | None) -> float | None:
        if t is None:
            return None
        return float(np.exp(t)) if log_transform else float(t)

    thr = BatchThresholds(
        batch=batch_label,
        median=float(med),
        mad=float(mad),
        lower=_report(lower_t),
        upper=_report(upper_t),
        n_used=int(est.size),
        degenerate=bool(degenerate),
    )
    return flags, thr


def detect_outliers(
    values: Sequence[float] | np.ndarray,
    direction: str = "both",
    log_transform: bool = False,
    batch: Any = None,
    min_diff: float | None = None,
    n_mads: float = 3.0,
    subset: Any = None,
) -> OutlierResult:
    """Flag values more than ``n_mads`` scaled MADs from the median.

    Each batch is estimated independently and every value is judged against its
    own batch's thresholds. ``subset`` restricts which values are used for
    estimation; all values are flagged. NaN values are ignored for estimation
    and never flagged.

    A MAD of zero gives a zero-width threshold. This is recorded as
    ``degenerate`` on the batch and a `DegenerateStatisticWarning` is emitted;
    values equal to the median are never flagged.

    Raises:
        InvalidInputError: On empty input, length mismatches, non-positive
            values under ``log_transform`` or an invalid direction.
    """
    arr = np.asarray(values, dtype=float).ravel()
    if arr.size == 0:
        raise InvalidInputError("values must contain at least one element.")
    direction_key = _normalize_direction(direction)
    if not np.isfinite(float(n_mads)) or float(n_mads) < 0:
        raise InvalidInputError("n_mads must be a non-negative finite number.")
    if min_diff is not None and (not np.isfinite(float(min_diff)) or float(min_diff) < 0):
        raise InvalidInputError("min_diff must be a non-negative finite number.")

    n = arr.size
    estimate = np.ones(n, dtype=bool) if subset is None else as_bool_mask(subset, n, "subset")
    codes, labels = _factorize_batch(batch, n)

    flags = np.zeros(n, dtype=bool)
    thresholds: dict[Any, BatchThresholds] = {}
    for code, label in enumerate(labels):
        idx = np.flatnonzero(codes == code)
        batch_flags, thr = _single_batch_thresholds(
            arr[idx],
            estimate[idx],
            batch_label=label,
            direction=direction_key,
            log_transform=bool(log_transform),
            n_mads=float(n_mads),
            min_diff=min_diff,
        )
        flags[idx] = batch_flags
        thresholds[label] = thr

    degenerate = [thr.batch for thr in thresholds.values() if thr.degenerate]
    if degenerate:
        warnings.warn(
            "MAD is zero for batch(es) "
            f"{', '.join(str(b) for b in degenerate)}; thresholds collapse onto the "
            "median. Inspect the recorded thresholds or set min_diff.",
            DegenerateStatisticWarning,
            stacklevel=2,
        )

    return OutlierResult(
        flags=flags,
        thresholds=thresholds,
        direction=direction_key,
        log_transform=bool(log_transform),
        n_mads=float(n_mads),
        min_diff=None if min_diff is None else float(min_diff),
    )


def quick_per_cell_qc(
    metrics: MetricTable,
    batch: Any = None,
    n_mads: float = 3.0,
    subsets: Sequence[str] | None = None,
) -> QuickQCResult:
    """Outlier-based discard calls over library size, detected genes and subsets.

    Library size and detected genes are tested on the log scale for low
    outliers; each subset percentage is tested for high outliers. The union of
    the per-metric calls is the discard decision.
    """
    names = list(metrics.subset_names if subsets is None else subsets)
    unknown = [s for s in names if s not in metrics.subset_percentages]
    if unknown:
        raise InvalidInputError(f"Unknown metric subsets: {', '.join(unknown)}")

    per_metric: dict[str, OutlierResult] = {
        "low_lib_size": detect_outliers(
            metrics.total_count, direction="lower", log_transform=True, batch=batch, n_mads=n_mads
        ),
        "low_n_features": detect_outliers(
            metrics.detected_features, direction="lower", log_transform=True, batch=batch, n_mads=n_mads
        ),
    }
    for name in names:
        per_metric[f"high_{name}_percent"] = detect_outliers(
            metrics.subset_percentages[name], direction="higher", batch=batch, n_mads=n_mads
        )

    discard = np.zeros(metrics.n_cells, dtype=bool)
    for res in per_metric.values():
        discard |= res.flags

    result = QuickQCResult(cell_ids=metrics.cell_ids, per_metric=per_metric, discard=discard)
    for name, count in result.summary().items():
        logger.info("QC %s: %d of %d cells", name, count, metrics.n_cells)
    return result
