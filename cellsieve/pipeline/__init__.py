"""AnnData pipeline chaining cell calling, QC and doublet scoring."""

from cellsieve.pipeline.io import ensure_dir, setup_logger, write_json, write_table
from cellsieve.pipeline.run import QCPipelineResult, run_qc_pipeline

__all__ = [
    "QCPipelineResult",
    "ensure_dir",
    "run_qc_pipeline",
    "setup_logger",
    "write_json",
    "write_table",
]
