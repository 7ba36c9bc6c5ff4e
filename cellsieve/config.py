"""Configuration loading utilities for cellsieve pipelines."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

from cellsieve.errors import InvalidConfigurationError


def load_json_config(path: str | Path) -> dict[str, Any]:
    """Load and validate a pipeline config from a JSON file."""
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    if config_path.suffix.lower() != ".json":
        raise ValueError(
            f"Unsupported config format for '{config_path}'. Use a .json config file."
        )

    try:
        with open(config_path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ValueError(
            f"Invalid JSON in config '{config_path}' at line {exc.lineno}, "
            f"column {exc.colno}: {exc.msg}"
        ) from exc

    if not isinstance(data, dict):
        raise ValueError(
            f"Invalid config root in '{config_path}': expected JSON object, got {type(data).__name__}."
        )
    return data


def _build_section(cls, section: str, payload: Any):
    if payload is None:
        return cls()
    if not isinstance(payload, Mapping):
        raise InvalidConfigurationError(
            f"Config section '{section}' must be a JSON object, got {type(payload).__name__}."
        )
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(payload) - known)
    if unknown:
        raise InvalidConfigurationError(
            f"Unknown key(s) in config section '{section}': {', '.join(unknown)}"
        )
    return cls(**dict(payload))


@dataclass(frozen=True)
class CellCallingConfig:
    """Ambient-profile testing of raw barcodes."""

    enabled: bool = False
    lower: int = 100
    n_iter: int = 10000
    fdr_threshold: float = 0.001
    test_ambient: bool = False
    retain: float | str | None = None
    ignore: int | None = None
    n_jobs: int = 1
    good_turing: bool = True

    def __post_init__(self) -> None:
        if int(self.n_iter) < 1:
            raise InvalidConfigurationError("cell_calling.n_iter must be a positive integer.")
        if not 0.0 < float(self.fdr_threshold) <= 1.0:
            raise InvalidConfigurationError("cell_calling.fdr_threshold must lie in (0, 1].")
        if isinstance(self.retain, str) and self.retain != "knee":
            raise InvalidConfigurationError("cell_calling.retain must be a number, 'knee' or null.")


@dataclass(frozen=True)
class OutlierQCConfig:
    """MAD-based discard calls on per-cell metrics."""

    enabled: bool = True
    n_mads: float = 3.0
    drop_discarded: bool = False

    def __post_init__(self) -> None:
        if float(self.n_mads) < 0:
            raise InvalidConfigurationError("qc.n_mads must be non-negative.")


@dataclass(frozen=True)
class DoubletDensityConfig:
    enabled: bool = True
    n_dim: int = 50
    k: int = 50
    n_sim: int | None = None
    allow_self_pairs: bool = False
    n_top_genes: int | None = 2000

    def __post_init__(self) -> None:
        if int(self.n_dim) < 1:
            raise InvalidConfigurationError("doublet_density.n_dim must be a positive integer.")
        if int(self.k) < 1:
            raise InvalidConfigurationError("doublet_density.k must be a positive integer.")
        if self.n_top_genes is not None and int(self.n_top_genes) < 1:
            raise InvalidConfigurationError("doublet_density.n_top_genes must be a positive integer or null.")


@dataclass(frozen=True)
class DoubletClusterConfig:
    enabled: bool = True
    threshold: float = 0.05
    tie_break: str = "library_size"
    n_mads: float = 3.0

    def __post_init__(self) -> None:
        if self.tie_break not in ("library_size", "lexical"):
            raise InvalidConfigurationError(
                f"doublet_cluster.tie_break must be 'library_size' or 'lexical'; got '{self.tie_break}'."
            )


@dataclass(frozen=True)
class QCConfig:
    """Full pipeline configuration.

    `seed` has no default value that would make runs silently random; stages
    that simulate fail with `InvalidConfigurationError` while it is unset.
    """

    h5ad_path: str | None = None
    outdir: str | None = None
    layer: str | None = None
    seed: int | None = None
    mito_prefix: str | None = "MT-"
    batch_key: str | None = None
    cluster_key: str | None = None
    make_plots: bool = True
    cell_calling: CellCallingConfig = field(default_factory=CellCallingConfig)
    qc: OutlierQCConfig = field(default_factory=OutlierQCConfig)
    doublet_density: DoubletDensityConfig = field(default_factory=DoubletDensityConfig)
    doublet_cluster: DoubletClusterConfig = field(default_factory=DoubletClusterConfig)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "QCConfig":
        sections = {
            "cell_calling": CellCallingConfig,
            "qc": OutlierQCConfig,
            "doublet_density": DoubletDensityConfig,
            "doublet_cluster": DoubletClusterConfig,
        }
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise InvalidConfigurationError(f"Unknown config key(s): {', '.join(unknown)}")
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key in sections:
                kwargs[key] = _build_section(sections[key], key, value)
            else:
                kwargs[key] = value
        seed = kwargs.get("seed")
        if seed is not None and (isinstance(seed, bool) or not isinstance(seed, int)):
            raise InvalidConfigurationError(f"seed must be an integer; got {seed!r}.")
        return cls(**kwargs)

    @classmethod
    def from_json(cls, path: str | Path) -> "QCConfig":
        return cls.from_dict(load_json_config(path))
