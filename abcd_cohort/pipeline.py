"""Linear orchestration of the cohort construction stages."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping

import pandas as pd

from . import augment, cohort, loader, normalize
from .config import AugmentSource, PipelineConfig
from .errors import StageOrderError

logger = logging.getLogger(__name__)

STAGES = ("load", "augment", "normalize", "extract", "derive")


@dataclass
class CohortResult:
    """Everything the reporting step needs from one pipeline run."""

    cohort: pd.DataFrame
    joined: pd.DataFrame
    derived: pd.DataFrame
    diagnostics: Mapping[str, object] = field(default_factory=dict)


class CohortPipeline:
    """Runs Load → [Augment]* → Normalize → Extract&Join → Derive&Complete.

    Each step hands back a fresh frame and may only run once, in order;
    ``augment`` is the one step that may repeat, and only before
    ``normalize``.
    """

    def __init__(self, config: PipelineConfig) -> None:
        self.config = config
        self._completed: list[str] = []
        self._table: pd.DataFrame | None = None
        self.diagnostics: dict[str, object] = {
            "base_path": str(config.base_path),
            "baseline_label": config.baseline_label,
            "followup_label": config.followup_label,
            "augmented": [],
        }

    @property
    def last_stage(self) -> str | None:
        return self._completed[-1] if self._completed else None

    def _enter(self, stage: str) -> None:
        last = self.last_stage
        if stage == "augment" and last in {"load", "augment"}:
            return
        if last is None:
            expected = "load"
        elif last == STAGES[-1]:
            expected = None
        else:
            expected = STAGES[STAGES.index(last) + 1]
        if stage == expected or (last == "load" and stage == "normalize"):
            return
        raise StageOrderError(
            f"Cannot run {stage!r} after {last or 'nothing'!r}; stages run in the order "
            + " → ".join(STAGES),
            stage=stage,
        )

    def _finish(self, stage: str, table: pd.DataFrame) -> pd.DataFrame:
        self._completed.append(stage)
        self._table = table
        return table.copy()

    def load(self) -> pd.DataFrame:
        self._enter("load")
        table = loader.load_base_table(self.config)
        self.diagnostics["rows_loaded"] = int(len(table))
        return self._finish("load", table)

    def augment(self, source: AugmentSource) -> pd.DataFrame:
        self._enter("augment")
        table = augment.augment_all(self._table, [source], self.config)
        self.diagnostics["augmented"].append(
            {"variable": source.variable, "path": str(source.path)}
        )
        return self._finish("augment", table)

    def normalize(self) -> pd.DataFrame:
        self._enter("normalize")
        table = normalize.normalize_config(self._table, self.config)
        return self._finish("normalize", table)

    def extract_and_join(self) -> pd.DataFrame:
        self._enter("extract")
        joined = cohort.extract_and_join(self._table, self.config)
        self.diagnostics["rows_baseline"] = int(len(joined))
        return self._finish("extract", joined)

    def derive_and_complete(self) -> cohort.CompletionResult:
        self._enter("derive")
        completion = cohort.derive_and_complete(self._table, self.config)
        self.diagnostics.update(completion.diagnostics)
        self._finish("derive", completion.cohort)
        return completion

    def run(self) -> CohortResult:
        """Execute every stage and return the cohort with its diagnostics."""

        self.load()
        for source in self.config.augment_sources:
            self.augment(source)
        self.normalize()
        joined = self.extract_and_join()
        completion = self.derive_and_complete()
        self.diagnostics["generated_at"] = datetime.now(timezone.utc).isoformat()
        return CohortResult(
            cohort=completion.cohort,
            joined=joined,
            derived=completion.derived,
            diagnostics=dict(self.diagnostics),
        )


def run_pipeline(config: PipelineConfig) -> CohortResult:
    """Build the complete-case cohort described by ``config``."""

    logger.info("Building cohort from %s", Path(config.base_path))
    return CohortPipeline(config).run()
