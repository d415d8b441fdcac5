"""Baseline/follow-up cohort construction and derived covariates."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Collection, Mapping, Sequence

import numpy as np
import pandas as pd

from .config import PipelineConfig
from .errors import InconsistentDerivationError, JoinCardinalityError, UnknownColumnError

logger = logging.getLogger(__name__)

# Combined household income codes grouped into three bands.
INCOME_BANDS: Mapping[str, str] = {
    **{str(code): "<50k" for code in range(1, 7)},
    **{str(code): ">50k<200k" for code in (7, 8, 9)},
    "10": ">=200k",
}
INCOME_BAND_LEVELS: Sequence[str] = ("<50k", ">50k<200k", ">=200k")


@dataclass
class CompletionResult:
    """Complete-case cohort plus the frame it was filtered from."""

    cohort: pd.DataFrame
    derived: pd.DataFrame
    diagnostics: Mapping[str, object]


def _is_missing(value: object) -> bool:
    if value is None:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def code_token(value: object) -> str | None:
    """Canonical text form of a raw code: ``5``, ``5.0`` and ``"5"`` agree."""

    if _is_missing(value):
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        return text
    if number.is_integer():
        return str(int(number))
    return text


def derive_status(
    sex: object,
    male_value: object,
    female_value: object,
    *,
    male_codes: Collection[str] = ("1",),
    female_codes: Collection[str] = ("2",),
    policy: str = "propagate",
) -> str | float:
    """Pick the sex-specific pubertal status for one participant.

    A missing or unrecognised sex code yields a missing status under the
    ``"propagate"`` policy and raises under ``"raise"``.
    """

    token = code_token(sex)
    if token is not None and token in male_codes:
        chosen = code_token(male_value)
    elif token is not None and token in female_codes:
        chosen = code_token(female_value)
    elif policy == "raise":
        if token is None:
            raise InconsistentDerivationError("sex is missing; cannot choose a pubertal status source")
        raise InconsistentDerivationError(f"unrecognised sex code {token!r}")
    else:
        chosen = None
    return np.nan if chosen is None else chosen


def income_band(code: object) -> str | float:
    """Map a raw income code to its band; codes outside the bands are missing."""

    token = code_token(code)
    if token is None:
        return np.nan
    return INCOME_BANDS.get(token, np.nan)


def _require(table: pd.DataFrame, columns: Sequence[str], stage: str) -> None:
    missing = [column for column in dict.fromkeys(columns) if column not in table.columns]
    if missing:
        raise UnknownColumnError(missing, stage=stage)


def time_slice(
    table: pd.DataFrame,
    label: str,
    columns: Sequence[str],
    *,
    subject_column: str,
    event_column: str,
) -> pd.DataFrame:
    """Rows recorded at ``label``, projected to ``columns``, one per subject."""

    at_label = (table[event_column].astype("string") == label).fillna(False)
    rows = table.loc[at_label.astype(bool), list(columns)]
    unkeyed = rows[subject_column].isna()
    if unkeyed.any():
        logger.warning("Dropping %d %s rows without a subject id", int(unkeyed.sum()), label)
        rows = rows.loc[~unkeyed]

    duplicated = rows[subject_column].duplicated(keep=False)
    if duplicated.any():
        raise JoinCardinalityError(
            f"{label} has more than one row for some subjects",
            keys=sorted(rows.loc[duplicated, subject_column].unique()),
            stage="extract",
        )
    return rows.reset_index(drop=True)


def extract_and_join(table: pd.DataFrame, config: PipelineConfig) -> pd.DataFrame:
    """Join baseline covariates to the follow-up outcome, one row per baseline subject."""

    subject = config.subject_column
    covariates = list(dict.fromkeys([subject, *config.covariate_columns]))
    _require(table, [config.event_column, *covariates, config.outcome_column], "extract")

    baseline = time_slice(
        table,
        config.baseline_label,
        covariates,
        subject_column=subject,
        event_column=config.event_column,
    )
    followup = time_slice(
        table,
        config.followup_label,
        [subject, config.outcome_column],
        subject_column=subject,
        event_column=config.event_column,
    )
    if followup.empty:
        logger.warning("No rows found for follow-up label %s", config.followup_label)

    joined = baseline.merge(followup, on=subject, how="left", validate="one_to_one")
    logger.info(
        "Joined %d baseline subjects to %d follow-up records (%d with an outcome)",
        len(baseline),
        len(followup),
        int(joined[config.outcome_column].notna().sum()),
    )
    return joined


def derive_pubertal_status(frame: pd.DataFrame, config: PipelineConfig) -> pd.Series:
    statuses = []
    for subject, sex, male, female in zip(
        frame[config.subject_column],
        frame[config.sex_column],
        frame[config.pds_male_column],
        frame[config.pds_female_column],
    ):
        try:
            statuses.append(
                derive_status(
                    sex,
                    male,
                    female,
                    male_codes=config.male_codes,
                    female_codes=config.female_codes,
                    policy=config.missing_sex_policy,
                )
            )
        except InconsistentDerivationError as exc:
            raise InconsistentDerivationError(f"{exc.message} (subject {subject})") from exc
    return pd.Series(statuses, index=frame.index, dtype="object").astype("category")


def derive_income_band(codes: pd.Series) -> pd.Series:
    bands = codes.astype("object").map(income_band)
    return pd.Series(
        pd.Categorical(bands, categories=list(INCOME_BAND_LEVELS), ordered=True),
        index=codes.index,
        name=codes.name,
    )


def derive_and_complete(joined: pd.DataFrame, config: PipelineConfig) -> CompletionResult:
    """Derive pubertal status and income band, then keep complete cases only.

    Superseded raw columns are dropped before listwise deletion so that a
    subject is not lost for missingness in a column the analysis no longer
    uses (e.g. the opposite-sex pubertal scale).
    """

    _require(
        joined,
        [
            config.subject_column,
            config.sex_column,
            config.pds_male_column,
            config.pds_female_column,
            config.income_column,
        ],
        "derive",
    )
    data = joined.copy()
    data[config.pds_column] = derive_pubertal_status(data, config)
    data[config.income_band_column] = derive_income_band(data[config.income_column])

    raw_income = data[config.income_column].astype("object").map(code_token)
    unmapped = sorted(
        raw_income[raw_income.notna() & data[config.income_band_column].isna()].unique()
    )
    if unmapped:
        logger.warning("Income codes outside the defined bands set to missing: %s", unmapped)

    sex_missing = int(data[config.sex_column].isna().sum())
    if sex_missing:
        logger.warning("%d subjects lack %s; pubertal status left missing", sex_missing, config.sex_column)

    superseded = [column for column in config.superseded_columns if column in data.columns]
    data = data.drop(columns=superseded)

    missing_by_column = {
        column: int(count) for column, count in data.isna().sum().items() if count
    }
    cohort = data.dropna(how="any").reset_index(drop=True)
    for column in cohort.columns:
        if isinstance(cohort[column].dtype, pd.CategoricalDtype):
            cohort[column] = cohort[column].cat.remove_unused_categories()

    logger.info(
        "Listwise deletion kept %d of %d subjects", len(cohort), len(data)
    )
    diagnostics = {
        "rows_joined": int(len(data)),
        "rows_complete": int(len(cohort)),
        "rows_dropped": int(len(data) - len(cohort)),
        "dropped_columns": superseded,
        "unmapped_income_codes": unmapped,
        "missing_sex": sex_missing,
        "missing_by_column": missing_by_column,
    }
    return CompletionResult(cohort=cohort, derived=data, diagnostics=diagnostics)
