"""Error types raised by the cohort construction stages."""
from __future__ import annotations

from typing import Sequence


class CohortPipelineError(Exception):
    """Base class for unrecoverable pipeline failures."""

    default_stage = "pipeline"

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        self.stage = stage or self.default_stage
        self.message = message
        super().__init__(f"[{self.stage}] {message}")

    def __str__(self) -> str:
        # KeyError subclasses would otherwise repr() the message.
        return f"[{self.stage}] {self.message}"


class FormatError(CohortPipelineError, ValueError):
    """The file is not parseable as delimited text with a header row."""

    default_stage = "load"


class UnknownColumnError(CohortPipelineError, KeyError):
    """Configuration references columns absent from the data."""

    def __init__(
        self,
        columns: Sequence[str],
        *,
        stage: str | None = None,
        source: str | None = None,
    ) -> None:
        self.columns = list(columns)
        where = f" in {source}" if source else ""
        super().__init__(
            "Columns not found" + where + ": " + ", ".join(self.columns),
            stage=stage,
        )


class JoinCardinalityError(CohortPipelineError, ValueError):
    """A join key is not unique where the join requires it to be."""

    default_stage = "augment"

    def __init__(
        self,
        message: str,
        *,
        keys: Sequence[object] = (),
        stage: str | None = None,
    ) -> None:
        self.keys = list(keys)
        if self.keys:
            preview = ", ".join(str(key) for key in self.keys[:5])
            more = f" (+{len(self.keys) - 5} more)" if len(self.keys) > 5 else ""
            message = f"{message}: {preview}{more}"
        super().__init__(message, stage=stage)


class InconsistentDerivationError(CohortPipelineError, ValueError):
    """A derived column cannot be computed from its conditioning variable."""

    default_stage = "derive"


class ColumnConflictError(CohortPipelineError, ValueError):
    """A column being added already exists in the table."""

    default_stage = "augment"


class StageOrderError(CohortPipelineError, RuntimeError):
    """A pipeline stage was invoked out of order or more than once."""
