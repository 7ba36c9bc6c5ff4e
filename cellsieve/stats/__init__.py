"""Statistical utilities for cellsieve."""

from cellsieve.stats.de import GroupMoments, group_moments, welch_t_test
from cellsieve.stats.scoring import MAD_CONSTANT, bh_fdr, median_mad

__all__ = [
    "MAD_CONSTANT",
    "GroupMoments",
    "bh_fdr",
    "group_moments",
    "median_mad",
    "welch_t_test",
]
