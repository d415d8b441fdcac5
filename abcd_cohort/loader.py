"""Reading delimited study tables with sentinel-aware missing values."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Sequence

import pandas as pd

from .config import SEMANTIC_TYPES, SENTINELS, PipelineConfig
from .errors import FormatError, JoinCardinalityError, UnknownColumnError

logger = logging.getLogger(__name__)

TAB_SUFFIXES = {".tsv", ".txt", ".tab"}


def _resolve_delimiter(path: Path, delimiter: str | None) -> str:
    if delimiter:
        return delimiter
    return "\t" if path.suffix.lower() in TAB_SUFFIXES else ","


def is_text_column(series: pd.Series) -> bool:
    """True for parsed text columns (object or pandas string dtype)."""

    if isinstance(series.dtype, pd.CategoricalDtype):
        return False
    return series.dtype == object or pd.api.types.is_string_dtype(series.dtype)


def duplicate_keys(frame: pd.DataFrame, keys: Sequence[str]) -> list[tuple]:
    """Distinct key tuples that occur on more than one fully keyed row."""

    keyed = frame.loc[frame[list(keys)].notna().all(axis=1), list(keys)]
    mask = keyed.duplicated(keep=False)
    if not mask.any():
        return []
    duplicated = keyed.loc[mask].drop_duplicates()
    return [tuple(row) for row in duplicated.itertuples(index=False, name=None)]


def _require_file(path: Path, stage: str) -> None:
    if not path.exists():
        raise FileNotFoundError(f"[{stage}] Data file not found at {path}.")


def read_header(
    path: Path,
    *,
    delimiter: str | None = None,
    stage: str = "load",
) -> list[str]:
    """Return the header row of a delimited file without reading its body."""

    path = Path(path)
    _require_file(path, stage)
    sep = _resolve_delimiter(path, delimiter)
    try:
        with path.open("r", encoding="utf-8-sig", newline="") as handle:
            header = pd.read_csv(handle, sep=sep, nrows=0)
    except ValueError as exc:
        raise FormatError(
            f"Could not read a header row from {path}: {exc}", stage=stage
        ) from exc
    return [str(column) for column in header.columns]


def read_delimited(
    path: Path,
    *,
    sentinels: Sequence[str] = SENTINELS,
    usecols: Sequence[str] | None = None,
    dtype: Mapping[str, str] | None = None,
    delimiter: str | None = None,
    stage: str = "load",
) -> pd.DataFrame:
    """Parse a delimited file, treating sentinel fields as missing.

    Sentinels are matched against the raw text before any type conversion, so
    a code such as ``"999"`` never survives as a number or a category level.
    """

    path = Path(path)
    _require_file(path, stage)
    sep = _resolve_delimiter(path, delimiter)
    try:
        with path.open("r", encoding="utf-8-sig", newline="") as handle:
            table = pd.read_csv(
                handle,
                sep=sep,
                usecols=list(usecols) if usecols is not None else None,
                dtype=dict(dtype) if dtype else None,
                na_values=list(sentinels),
                keep_default_na=False,
                low_memory=False,
            )
    except (ValueError, TypeError) as exc:
        raise FormatError(
            f"Could not parse {path} as delimited text: {exc}", stage=stage
        ) from exc
    return table


def _declared_dtypes(
    columns: Sequence[str],
    column_types: Mapping[str, str] | None,
) -> dict[str, str]:
    declared: dict[str, str] = {}
    for column, kind in (column_types or {}).items():
        if column not in columns:
            continue
        if kind not in SEMANTIC_TYPES:
            raise ValueError(f"Unknown semantic type {kind!r} for column {column}.")
        declared[column] = SEMANTIC_TYPES[kind]
    return declared


def load_table(
    path: Path,
    *,
    subject_column: str,
    event_column: str,
    sentinels: Sequence[str] = SENTINELS,
    column_types: Mapping[str, str] | None = None,
    delimiter: str | None = None,
) -> pd.DataFrame:
    """Load a subject/event table with declared types and inferred fallbacks.

    Declared columns are parsed straight into their pandas dtype. Undeclared
    columns keep the parser's numeric inference, and any that come back as
    text are stored as categoricals. The subject column is always text.
    """

    path = Path(path)
    header = read_header(path, delimiter=delimiter, stage="load")
    missing = [column for column in (subject_column, event_column) if column not in header]
    if missing:
        raise UnknownColumnError(missing, stage="load", source=str(path))

    declared = _declared_dtypes(header, column_types)
    declared[subject_column] = SEMANTIC_TYPES["text"]

    table = read_delimited(
        path,
        sentinels=sentinels,
        dtype=declared,
        delimiter=delimiter,
        stage="load",
    )

    duplicates = duplicate_keys(table, [subject_column, event_column])
    if duplicates:
        raise JoinCardinalityError(
            f"{path.name} has {len(duplicates)} duplicated "
            f"({subject_column}, {event_column}) keys",
            keys=duplicates,
            stage="load",
        )

    for column in table.columns:
        if column in declared:
            continue
        if is_text_column(table[column]):
            table[column] = table[column].astype("category")
            logger.debug("Inferred categorical column %s", column)

    logger.info(
        "Loaded %s: %d rows, %d columns", path.name, len(table), table.shape[1]
    )
    return table


def load_base_table(config: PipelineConfig) -> pd.DataFrame:
    """Load the base dataset named by the run configuration."""

    return load_table(
        config.base_path,
        subject_column=config.subject_column,
        event_column=config.event_column,
        sentinels=config.sentinels,
        column_types=config.column_types,
        delimiter=config.delimiter,
    )
