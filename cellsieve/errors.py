"""Exception and warning types raised by cellsieve."""

from __future__ import annotations


class InvalidInputError(ValueError):
    """Input data cannot be used (bad values, empty or mismatched vectors)."""


class InvalidConfigurationError(ValueError):
    """Parameters make the requested computation meaningless."""


class DegenerateStatisticWarning(RuntimeWarning):
    """A statistic collapsed (e.g. MAD of zero) and the result needs inspection."""
