"""Baseline brain volume and follow-up substance use cohort construction."""

from . import augment, cohort, config, errors, loader, normalize, pipeline, report  # noqa: F401
from .config import AugmentSource, PipelineConfig
from .pipeline import CohortPipeline, CohortResult, run_pipeline

__all__ = [
    "augment",
    "cohort",
    "config",
    "errors",
    "loader",
    "normalize",
    "pipeline",
    "report",
    "AugmentSource",
    "PipelineConfig",
    "CohortPipeline",
    "CohortResult",
    "run_pipeline",
]
