import numpy as np
import pandas as pd
import pytest

from abcd_cohort import config as cfg
from abcd_cohort.cohort import (
    code_token,
    derive_and_complete,
    derive_status,
    extract_and_join,
    income_band,
)
from abcd_cohort.config import PipelineConfig
from abcd_cohort.errors import InconsistentDerivationError, JoinCardinalityError, UnknownColumnError
from abcd_cohort.normalize import normalize_config

BASELINE = cfg.BASELINE_LABEL
FOLLOWUP = cfg.FOLLOWUP_LABEL
VOLUME = cfg.VOLUME_COLUMNS[0]

COVARIATES = (
    cfg.SUBJECT_COLUMN,
    cfg.SITE_COLUMN,
    cfg.AGE_COLUMN,
    cfg.SEX_COLUMN,
    cfg.INCOME_COLUMN,
    cfg.PDS_MALE_COLUMN,
    cfg.PDS_FEMALE_COLUMN,
    VOLUME,
)


def _config(**overrides):
    settings = {
        "base_path": "unused.csv",
        "covariate_columns": COVARIATES,
        "categorical_columns": (
            cfg.EVENT_COLUMN,
            cfg.SITE_COLUMN,
            cfg.SEX_COLUMN,
            cfg.INCOME_COLUMN,
            cfg.PDS_MALE_COLUMN,
            cfg.PDS_FEMALE_COLUMN,
        ),
    }
    settings.update(overrides)
    return PipelineConfig(**settings)


def _baseline_row(subject, sex=1, income=5):
    return {
        cfg.SUBJECT_COLUMN: subject,
        cfg.EVENT_COLUMN: BASELINE,
        cfg.SITE_COLUMN: "site01",
        cfg.AGE_COLUMN: 120.0,
        cfg.SEX_COLUMN: sex,
        cfg.INCOME_COLUMN: income,
        cfg.PDS_MALE_COLUMN: 2 if sex == 1 else np.nan,
        cfg.PDS_FEMALE_COLUMN: 3 if sex == 2 else np.nan,
        VOLUME: 4100.0,
        cfg.OUTCOME_COLUMN: np.nan,
    }


def _followup_row(subject, outcome):
    return {
        cfg.SUBJECT_COLUMN: subject,
        cfg.EVENT_COLUMN: FOLLOWUP,
        cfg.OUTCOME_COLUMN: outcome,
    }


@pytest.mark.parametrize(
    "code, expected",
    [
        *[(code, "<50k") for code in range(1, 7)],
        *[(code, ">50k<200k") for code in (7, 8, 9)],
        (10, ">=200k"),
        ("5", "<50k"),
        (5.0, "<50k"),
        ("10", ">=200k"),
    ],
)
def test_income_band_maps_defined_codes(code, expected):
    assert income_band(code) == expected


@pytest.mark.parametrize("code", ["11", 11, 0, "999", None, np.nan, "abc"])
def test_income_band_leaves_other_codes_missing(code):
    assert pd.isna(income_band(code))


def test_code_token_normalises_numeric_forms():
    assert code_token(5) == "5"
    assert code_token(5.0) == "5"
    assert code_token(" 5 ") == "5"
    assert code_token(2.5) == "2.5"
    assert code_token(pd.NA) is None


def test_derive_status_selects_sex_specific_source():
    assert derive_status(1, 2, np.nan) == "2"
    assert derive_status("2", np.nan, 4.0) == "4"
    assert pd.isna(derive_status(1, np.nan, 4))


def test_derive_status_missing_sex_policy():
    assert pd.isna(derive_status(np.nan, 2, 3))
    assert pd.isna(derive_status(3, 2, 3))

    with pytest.raises(InconsistentDerivationError):
        derive_status(np.nan, 2, 3, policy="raise")
    with pytest.raises(InconsistentDerivationError, match="unrecognised"):
        derive_status(3, 2, 3, policy="raise")


def test_end_to_end_join_keeps_unmatched_subjects_until_deletion():
    table = pd.DataFrame(
        [
            _baseline_row("A"),
            _baseline_row("B", sex=2),
            _baseline_row("C", sex=2, income=10),
            _followup_row("A", 3.0),
            _followup_row("C", 0.0),
        ]
    )
    config = _config()
    normalized = normalize_config(table, config)

    joined = extract_and_join(normalized, config)

    assert len(joined) == 3
    assert joined[cfg.SUBJECT_COLUMN].tolist() == ["A", "B", "C"]
    outcome = joined.set_index(cfg.SUBJECT_COLUMN)[cfg.OUTCOME_COLUMN]
    assert pd.isna(outcome["B"])

    completion = derive_and_complete(joined, config)
    cohort = completion.cohort

    assert cohort[cfg.SUBJECT_COLUMN].tolist() == ["A", "C"]
    assert cohort.set_index(cfg.SUBJECT_COLUMN)["pds"].astype(str).to_dict() == {"A": "2", "C": "3"}
    assert cohort.set_index(cfg.SUBJECT_COLUMN)["income_band"].astype(str).to_dict() == {
        "A": "<50k",
        "C": ">=200k",
    }
    for column in (cfg.PDS_MALE_COLUMN, cfg.PDS_FEMALE_COLUMN, cfg.INCOME_COLUMN):
        assert column not in cohort.columns
    assert completion.diagnostics["rows_dropped"] == 1
    assert len(joined) == 3


def test_listwise_deletion_removes_exactly_incomplete_rows():
    rng = np.random.default_rng(7)
    subjects = [f"NDAR_INV{i:04d}" for i in range(100)]
    sexes = [1 if i % 2 else 2 for i in range(100)]
    joined = pd.DataFrame(
        {
            cfg.SUBJECT_COLUMN: pd.array(subjects, dtype="string"),
            cfg.SITE_COLUMN: pd.Categorical(["site01", "site02"] * 50),
            cfg.AGE_COLUMN: rng.normal(120, 5, 100),
            cfg.SEX_COLUMN: pd.Categorical(sexes),
            cfg.INCOME_COLUMN: pd.Categorical(rng.integers(1, 11, 100)),
            cfg.PDS_MALE_COLUMN: [2.0 if s == 1 else np.nan for s in sexes],
            cfg.PDS_FEMALE_COLUMN: [3.0 if s == 2 else np.nan for s in sexes],
            VOLUME: rng.normal(4000, 300, 100),
            cfg.OUTCOME_COLUMN: rng.poisson(2, 100).astype(float),
        }
    )
    joined.loc[0:5, cfg.AGE_COLUMN] = np.nan
    joined.loc[6:11, cfg.OUTCOME_COLUMN] = np.nan

    completion = derive_and_complete(joined, _config())

    assert len(completion.cohort) == 88
    assert not completion.cohort.isna().any().any()
    assert set(completion.cohort[cfg.SUBJECT_COLUMN]) == set(subjects[12:])
    assert completion.diagnostics["missing_by_column"] == {
        cfg.AGE_COLUMN: 6,
        cfg.OUTCOME_COLUMN: 6,
    }


def test_unmapped_income_codes_drop_subjects_and_are_reported():
    table = pd.DataFrame([_baseline_row("A", income=11), _baseline_row("B"), _followup_row("A", 1.0), _followup_row("B", 2.0)])
    config = _config()
    joined = extract_and_join(normalize_config(table, config), config)

    completion = derive_and_complete(joined, config)

    assert completion.cohort[cfg.SUBJECT_COLUMN].tolist() == ["B"]
    assert completion.diagnostics["unmapped_income_codes"] == ["11"]
    assert list(completion.derived["income_band"].cat.categories) == ["<50k", ">50k<200k", ">=200k"]
    assert completion.derived["income_band"].cat.ordered


def test_raise_policy_names_the_subject():
    table = pd.DataFrame([_baseline_row("A", sex=np.nan), _followup_row("A", 1.0)])
    config = _config(missing_sex_policy="raise")
    joined = extract_and_join(normalize_config(table, config), config)

    with pytest.raises(InconsistentDerivationError, match="subject A"):
        derive_and_complete(joined, config)


def test_duplicate_baseline_subject_raises():
    table = pd.DataFrame([_baseline_row("A"), _baseline_row("A"), _followup_row("A", 1.0)])
    config = _config()

    with pytest.raises(JoinCardinalityError):
        extract_and_join(normalize_config(table, config), config)


def test_missing_covariate_column_raises():
    table = pd.DataFrame([_baseline_row("A"), _followup_row("A", 1.0)])
    config = _config(covariate_columns=(*COVARIATES, "nihtbx_totalcomp_uncorrected"))

    with pytest.raises(UnknownColumnError) as excinfo:
        extract_and_join(normalize_config(table, config), config)

    assert excinfo.value.columns == ["nihtbx_totalcomp_uncorrected"]
