"""Left-joining supplementary variables onto the subject/event table."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

import pandas as pd

from .config import SEMANTIC_TYPES, SENTINELS, AugmentSource, PipelineConfig
from .errors import ColumnConflictError, JoinCardinalityError, UnknownColumnError
from .loader import duplicate_keys, is_text_column, read_delimited, read_header

logger = logging.getLogger(__name__)


def add_variable(
    table: pd.DataFrame,
    source_path: Path,
    variable: str,
    *,
    subject_column: str,
    event_column: str,
    sentinels: Sequence[str] = SENTINELS,
    column_type: str | None = None,
    delimiter: str | None = None,
) -> pd.DataFrame:
    """Attach ``variable`` from ``source_path`` by (subject, event) key.

    Only the two key columns and the target are read from the source, which
    may be far wider than the base table. Every input row appears exactly once
    in the result; rows without a match get a missing value.
    """

    source_path = Path(source_path)
    keys = [subject_column, event_column]
    if variable in table.columns:
        raise ColumnConflictError(
            f"Column {variable} already present; refusing to join it again from {source_path}."
        )

    header = read_header(source_path, delimiter=delimiter, stage="augment")
    wanted = [*keys, variable]
    missing = [column for column in wanted if column not in header]
    if missing:
        raise UnknownColumnError(missing, stage="augment", source=str(source_path))

    dtype = {subject_column: SEMANTIC_TYPES["text"], event_column: SEMANTIC_TYPES["text"]}
    if column_type is not None:
        dtype[variable] = SEMANTIC_TYPES[column_type]
    source = read_delimited(
        source_path,
        sentinels=sentinels,
        usecols=wanted,
        dtype=dtype,
        delimiter=delimiter,
        stage="augment",
    )
    if column_type is None and is_text_column(source[variable]):
        source[variable] = source[variable].astype("category")

    unkeyed = source[keys].isna().any(axis=1)
    if unkeyed.any():
        logger.warning(
            "Ignoring %d rows of %s with a missing key", int(unkeyed.sum()), source_path.name
        )
        source = source.loc[~unkeyed]

    duplicates = duplicate_keys(source, keys)
    if duplicates:
        raise JoinCardinalityError(
            f"{source_path.name} has {len(duplicates)} duplicated "
            f"({subject_column}, {event_column}) keys for {variable}",
            keys=duplicates,
        )

    # Align key dtypes with the table so the merge compares like with like.
    left = table.copy()
    left_key_dtypes = {column: left[column].dtype for column in keys}
    for column in keys:
        left[column] = left[column].astype("string")
        source[column] = source[column].astype("string")

    merged = left.merge(source, on=keys, how="left", validate="many_to_one")
    if len(merged) != len(table):
        raise JoinCardinalityError(
            f"Joining {variable} changed the row count from {len(table)} to {len(merged)}"
        )
    for column, dtype_ in left_key_dtypes.items():
        merged[column] = merged[column].astype(dtype_)
    merged.index = table.index

    matched = int(merged[variable].notna().sum())
    logger.info(
        "Augmented %s from %s: %d of %d rows matched",
        variable,
        source_path.name,
        matched,
        len(merged),
    )
    return merged


def augment_all(
    table: pd.DataFrame,
    sources: Sequence[AugmentSource],
    config: PipelineConfig,
) -> pd.DataFrame:
    """Apply each supplementary source in order."""

    augmented = table
    for source in sources:
        augmented = add_variable(
            augmented,
            source.path,
            source.variable,
            subject_column=config.subject_column,
            event_column=config.event_column,
            sentinels=config.sentinels,
            column_type=config.column_types.get(source.variable),
            delimiter=config.delimiter,
        )
    return augmented
