"""Type normalisation ahead of cohort construction."""
from __future__ import annotations

import logging
from typing import Sequence

import numpy as np
import pandas as pd

from .config import PipelineConfig
from .errors import FormatError, UnknownColumnError

logger = logging.getLogger(__name__)


def as_text(series: pd.Series) -> pd.Series:
    """Cast identifiers to text, rendering whole-number floats without ``.0``."""

    if pd.api.types.is_numeric_dtype(series) and not pd.api.types.is_bool_dtype(series):
        values = pd.to_numeric(series, errors="coerce")
        whole = values.dropna()
        if (whole == np.floor(whole)).all():
            return values.astype("Int64").astype("string")
    return series.astype("string")


def reorder_levels(series: pd.Series, first: str) -> pd.Series:
    """Return a categorical copy of ``series`` whose first level is ``first``.

    The remaining levels keep their existing relative order; a text column is
    first converted with pandas' sorted level order.
    """

    categorical = series if isinstance(series.dtype, pd.CategoricalDtype) else series.astype("category")
    levels = [str(level) for level in categorical.cat.categories]
    if first not in levels:
        raise FormatError(
            f"Level {first!r} not found in {series.name}; levels are {levels}",
            stage="normalize",
        )
    # Levels are compared as text so numeric-looking labels still match.
    categorical = categorical.cat.rename_categories(levels)
    order = [first, *[level for level in levels if level != first]]
    return categorical.cat.reorder_categories(order, ordered=False)


def normalize_types(
    table: pd.DataFrame,
    categorical_columns: Sequence[str],
    *,
    subject_column: str,
    event_column: str,
    baseline_label: str,
) -> pd.DataFrame:
    """Force identifier, categorical and event-level typing on a copy of ``table``."""

    wanted = [subject_column, event_column, *categorical_columns]
    missing = [column for column in dict.fromkeys(wanted) if column not in table.columns]
    if missing:
        raise UnknownColumnError(missing, stage="normalize")

    data = table.copy()
    data[subject_column] = as_text(data[subject_column])

    for column in categorical_columns:
        if column == subject_column:
            continue
        if not isinstance(data[column].dtype, pd.CategoricalDtype):
            data[column] = data[column].astype("category")
            logger.debug("Cast %s to categorical", column)

    data[event_column] = reorder_levels(data[event_column], baseline_label)
    logger.info(
        "Normalised %d categorical columns; %s levels: %s",
        len(categorical_columns),
        event_column,
        list(data[event_column].cat.categories),
    )
    return data


def normalize_config(table: pd.DataFrame, config: PipelineConfig) -> pd.DataFrame:
    return normalize_types(
        table,
        config.categorical_columns,
        subject_column=config.subject_column,
        event_column=config.event_column,
        baseline_label=config.baseline_label,
    )
