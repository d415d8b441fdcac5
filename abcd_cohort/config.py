"""Run configuration for the cohort pipeline."""
from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Sequence

BASELINE_LABEL = "baseline_year_1_arm_1"
FOLLOWUP_LABEL = "3_year_follow_up_y_arm_1"

SUBJECT_COLUMN = "src_subject_id"
EVENT_COLUMN = "eventname"

# Raw fields read as missing: blanks plus the "refused" / "don't know" codes.
SENTINELS: Sequence[str] = ("", " ", "999", "777")

SEMANTIC_TYPES = {
    "numeric": "float64",
    "categorical": "category",
    "text": "string",
}

FAMILY_COLUMN = "rel_family_id"
SITE_COLUMN = "site_id_l"
DEVICE_COLUMN = "mri_info_deviceserialnumber"
AGE_COLUMN = "interview_age"
SEX_COLUMN = "demo_sex_v2"
INCOME_COLUMN = "demo_comb_income_v2"
PDS_MALE_COLUMN = "pds_p_ss_male_category_2"
PDS_FEMALE_COLUMN = "pds_p_ss_female_category_2"
RISK_COLUMN = "famhx_ss_momdad_alc_p"
OPPORTUNITY_COLUMN = "reshist_addr1_coi_z_coi_nat"
BEHAVIOUR_COLUMN = "cbcl_scr_syn_external_r"
COGNITION_COLUMN = "nihtbx_totalcomp_uncorrected"
VOLUME_COLUMNS: Sequence[str] = ("smri_vol_scs_hpuslh", "smri_vol_scs_amygdalalh")
OUTCOME_COLUMN = "su_total_use_days"

CATEGORICAL_COLUMNS: Sequence[str] = (
    EVENT_COLUMN,
    FAMILY_COLUMN,
    SITE_COLUMN,
    DEVICE_COLUMN,
    SEX_COLUMN,
    INCOME_COLUMN,
    PDS_MALE_COLUMN,
    PDS_FEMALE_COLUMN,
    RISK_COLUMN,
)

COVARIATE_COLUMNS: Sequence[str] = (
    SUBJECT_COLUMN,
    FAMILY_COLUMN,
    SITE_COLUMN,
    DEVICE_COLUMN,
    AGE_COLUMN,
    SEX_COLUMN,
    INCOME_COLUMN,
    PDS_MALE_COLUMN,
    PDS_FEMALE_COLUMN,
    RISK_COLUMN,
    OPPORTUNITY_COLUMN,
    BEHAVIOUR_COLUMN,
    COGNITION_COLUMN,
    *VOLUME_COLUMNS,
)

COLUMN_TYPES: Mapping[str, str] = {
    SUBJECT_COLUMN: "text",
    FAMILY_COLUMN: "text",
    AGE_COLUMN: "numeric",
    OPPORTUNITY_COLUMN: "numeric",
    BEHAVIOUR_COLUMN: "numeric",
    COGNITION_COLUMN: "numeric",
    OUTCOME_COLUMN: "numeric",
    **{column: "numeric" for column in VOLUME_COLUMNS},
}

MODEL_COVARIATES: Sequence[str] = (
    AGE_COLUMN,
    SEX_COLUMN,
    "income_band",
    "pds",
    RISK_COLUMN,
    OPPORTUNITY_COLUMN,
    BEHAVIOUR_COLUMN,
    COGNITION_COLUMN,
)

OUTPUT_ROOT = Path("outputs/cohort")

MISSING_SEX_POLICIES = ("propagate", "raise")


@dataclass(frozen=True)
class AugmentSource:
    """One supplementary variable and the file it is read from."""

    variable: str
    path: Path


@dataclass
class PipelineConfig:
    """Explicit configuration threaded through every pipeline stage."""

    base_path: Path
    followup_label: str = FOLLOWUP_LABEL
    baseline_label: str = BASELINE_LABEL
    subject_column: str = SUBJECT_COLUMN
    event_column: str = EVENT_COLUMN
    sentinels: Sequence[str] = SENTINELS
    delimiter: str | None = None
    column_types: Mapping[str, str] = field(default_factory=lambda: dict(COLUMN_TYPES))
    categorical_columns: Sequence[str] = CATEGORICAL_COLUMNS
    augment_sources: Sequence[AugmentSource] = ()
    covariate_columns: Sequence[str] = COVARIATE_COLUMNS
    outcome_column: str = OUTCOME_COLUMN

    # Derived covariates.
    sex_column: str = SEX_COLUMN
    male_codes: Sequence[str] = ("1",)
    female_codes: Sequence[str] = ("2",)
    pds_male_column: str = PDS_MALE_COLUMN
    pds_female_column: str = PDS_FEMALE_COLUMN
    pds_column: str = "pds"
    missing_sex_policy: str = "propagate"
    income_column: str = INCOME_COLUMN
    income_band_column: str = "income_band"
    superseded_columns: Sequence[str] = (
        PDS_MALE_COLUMN,
        PDS_FEMALE_COLUMN,
        INCOME_COLUMN,
    )

    # Reporting.
    volume_columns: Sequence[str] = VOLUME_COLUMNS
    model_covariates: Sequence[str] = MODEL_COVARIATES
    group_column: str = SITE_COLUMN
    variance_components: Mapping[str, str] = field(
        default_factory=lambda: {"family": FAMILY_COLUMN}
    )
    standardize: bool = True
    output_dir: Path | None = None

    def __post_init__(self) -> None:
        self.base_path = Path(self.base_path)
        if self.output_dir is not None:
            self.output_dir = Path(self.output_dir)
        if self.baseline_label == self.followup_label:
            raise ValueError(
                "Baseline and follow-up labels must differ; both are "
                f"{self.baseline_label!r}."
            )
        if self.missing_sex_policy not in MISSING_SEX_POLICIES:
            raise ValueError(
                f"Unknown missing_sex_policy {self.missing_sex_policy!r}; "
                f"expected one of {', '.join(MISSING_SEX_POLICIES)}."
            )
        unknown_types = {
            column: kind
            for column, kind in self.column_types.items()
            if kind not in SEMANTIC_TYPES
        }
        if unknown_types:
            raise ValueError(f"Unknown semantic column types: {unknown_types}")
        self.augment_sources = tuple(
            source
            if isinstance(source, AugmentSource)
            else AugmentSource(variable=source[0], path=Path(source[1]))
            for source in self.augment_sources
        )

    @property
    def key_columns(self) -> list[str]:
        return [self.subject_column, self.event_column]

    def pandas_dtypes(self) -> dict[str, str]:
        """Translate the semantic column declarations into pandas dtypes."""

        dtypes = {column: SEMANTIC_TYPES[kind] for column, kind in self.column_types.items()}
        dtypes[self.subject_column] = SEMANTIC_TYPES["text"]
        return dtypes

    @classmethod
    def from_json(cls, path: Path, **overrides: object) -> "PipelineConfig":
        """Build a configuration from a JSON file; keyword overrides win."""

        with Path(path).open("r", encoding="utf-8") as handle:
            payload = json.load(handle)

        known = {item.name for item in dataclasses.fields(cls)}
        unknown = sorted(set(payload) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys in {path}: {', '.join(unknown)}")

        sources = payload.get("augment_sources", [])
        payload["augment_sources"] = [
            AugmentSource(variable=item["variable"], path=Path(item["path"]))
            if isinstance(item, Mapping)
            else AugmentSource(variable=item[0], path=Path(item[1]))
            for item in sources
        ]
        payload.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**payload)
