"""Descriptive tables, retention checks, mixed models and figures for a cohort."""
from __future__ import annotations

import json
import logging
import platform
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from importlib import metadata
from pathlib import Path
from typing import Mapping, Sequence

import matplotlib

matplotlib.use("Agg")  # Non-interactive backend
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
import statsmodels.formula.api as smf
from scipy import stats
from sklearn.preprocessing import StandardScaler

from .config import OUTPUT_ROOT, PipelineConfig
from .pipeline import CohortResult

logger = logging.getLogger(__name__)

DESCRIPTIVE_COLUMNS = ["variable", "level", "n", "pct", "mean", "sd", "min", "max"]
RETENTION_COLUMNS = ["variable", "test", "statistic", "pvalue", "n_retained", "n_excluded"]

DISTRIBUTION = "abcd-volume-substance-cohort"
REQUIREMENT_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*")


@dataclass
class ModelFit:
    """A fitted mixed model for one brain volume and its tidy coefficients."""

    volume: str
    formula: str
    result: object
    coefficients: pd.DataFrame
    converged: bool


def _is_categorical(series: pd.Series) -> bool:
    return isinstance(series.dtype, pd.CategoricalDtype) or not pd.api.types.is_numeric_dtype(series)


def _grouping_columns(config: PipelineConfig) -> set[str]:
    return {config.subject_column, *config.variance_components.values()}


def describe_cohort(cohort: pd.DataFrame, config: PipelineConfig) -> pd.DataFrame:
    """Counts and percentages for categorical columns, moments for numeric ones."""

    rows: list[dict[str, object]] = []
    total = len(cohort)
    for column in cohort.columns:
        if column in _grouping_columns(config):
            continue
        series = cohort[column]
        if _is_categorical(series):
            counts = series.value_counts(dropna=False, sort=False)
            for level, count in counts.items():
                rows.append(
                    {
                        "variable": column,
                        "level": str(level),
                        "n": int(count),
                        "pct": float(count / total) if total else np.nan,
                    }
                )
        else:
            values = pd.to_numeric(series, errors="coerce")
            rows.append(
                {
                    "variable": column,
                    "level": "",
                    "n": int(values.notna().sum()),
                    "mean": float(values.mean()),
                    "sd": float(values.std()),
                    "min": float(values.min()),
                    "max": float(values.max()),
                }
            )
    return pd.DataFrame(rows, columns=DESCRIPTIVE_COLUMNS)


def compare_retention(
    derived: pd.DataFrame,
    cohort: pd.DataFrame,
    config: PipelineConfig,
) -> pd.DataFrame:
    """Contrast subjects kept by listwise deletion with those dropped."""

    subject = config.subject_column
    retained = derived[subject].isin(cohort[subject])
    if retained.all() or not retained.any():
        return pd.DataFrame(columns=RETENTION_COLUMNS)

    rows: list[dict[str, object]] = []
    for column in derived.columns:
        if column in _grouping_columns(config):
            continue
        series = derived[column]
        kept = series[retained].dropna()
        dropped = series[~retained].dropna()
        if kept.empty or dropped.empty:
            continue
        if _is_categorical(series):
            table = pd.crosstab(retained[series.notna()], series.dropna().astype(str))
            if table.shape[0] < 2 or table.shape[1] < 2:
                continue
            statistic, pvalue, _, _ = stats.chi2_contingency(table)
            test = "chi2"
        else:
            if len(kept) < 2 or len(dropped) < 2:
                continue
            statistic, pvalue = stats.ttest_ind(
                kept.astype(float), dropped.astype(float), equal_var=False
            )
            test = "welch_t"
        rows.append(
            {
                "variable": column,
                "test": test,
                "statistic": float(statistic),
                "pvalue": float(pvalue),
                "n_retained": int(len(kept)),
                "n_excluded": int(len(dropped)),
            }
        )
    return pd.DataFrame(rows, columns=RETENTION_COLUMNS)


def build_formula(
    data: pd.DataFrame,
    outcome: str,
    volume: str,
    covariates: Sequence[str],
) -> str:
    terms = [volume]
    for column in covariates:
        if column in (volume, outcome):
            continue
        terms.append(f"C({column})" if _is_categorical(data[column]) else column)
    return f"{outcome} ~ " + " + ".join(terms)


def _model_frame(cohort: pd.DataFrame, volume: str, config: PipelineConfig) -> tuple[pd.DataFrame, list[str]]:
    covariates = [column for column in config.model_covariates if column in cohort.columns]
    columns = list(
        dict.fromkeys(
            [
                config.outcome_column,
                volume,
                *covariates,
                config.group_column,
                *config.variance_components.values(),
            ]
        )
    )
    data = cohort.loc[:, columns].copy()
    data[config.outcome_column] = pd.to_numeric(data[config.outcome_column], errors="coerce")

    if config.standardize:
        numeric = [
            column
            for column in [volume, *covariates]
            if not _is_categorical(data[column])
        ]
        if numeric:
            data[numeric] = StandardScaler().fit_transform(data[numeric].astype(float))
    return data, covariates


def fit_mixed_model(
    cohort: pd.DataFrame,
    volume: str,
    config: PipelineConfig,
) -> ModelFit:
    """Linear mixed model of the outcome on one brain volume.

    Random intercepts for the study site, with optional variance components
    (family by default) nested inside site.
    """

    data, covariates = _model_frame(cohort, volume, config)
    formula = build_formula(data, config.outcome_column, volume, covariates)
    vc_formula = {
        name: f"0 + C({column})" for name, column in config.variance_components.items()
    }
    model = smf.mixedlm(
        formula,
        data,
        groups=data[config.group_column].astype(str),
        re_formula="~1",
        vc_formula=vc_formula or None,
    )
    result = model.fit(method="lbfgs", maxiter=200)

    fe_index = result.fe_params.index
    conf_int = result.conf_int().reindex(fe_index)
    coefficients = pd.DataFrame(
        {
            "volume": volume,
            "term": fe_index,
            "estimate": result.fe_params.values,
            "std_err": result.bse_fe.reindex(fe_index).values,
            "pvalue": result.pvalues.reindex(fe_index).values,
            "ci_low": conf_int.iloc[:, 0].values,
            "ci_high": conf_int.iloc[:, 1].values,
        }
    )
    converged = bool(getattr(result, "converged", False))
    logger.info(
        "Fitted %s (n=%d, converged=%s)", formula, int(result.nobs), converged
    )
    return ModelFit(
        volume=volume,
        formula=formula,
        result=result,
        coefficients=coefficients,
        converged=converged,
    )


def plot_volume_outcome(
    cohort: pd.DataFrame,
    volume: str,
    config: PipelineConfig,
    output_path: Path,
) -> None:
    """Scatter of follow-up outcome against baseline volume with a linear fit."""

    plt.figure(figsize=(7, 5))
    sns.regplot(
        data=cohort,
        x=volume,
        y=config.outcome_column,
        scatter_kws={"alpha": 0.4, "s": 12},
        line_kws={"color": "darkred"},
    )
    plt.title(f"{config.outcome_column} at {config.followup_label} by baseline {volume}")
    plt.tight_layout()
    plt.savefig(output_path, dpi=300)
    plt.close()


def plot_missingness(derived: pd.DataFrame, output_path: Path) -> None:
    """Bar chart of the share of subjects missing each field before deletion."""

    shares = derived.isna().mean().sort_values(ascending=False)
    shares = shares[shares > 0]
    frame = pd.DataFrame({"field": shares.index, "missing": shares.values})

    plt.figure(figsize=(8, max(2.5, 0.35 * len(frame) + 1)))
    if frame.empty:
        plt.text(0.5, 0.5, "No missing values", ha="center", va="center")
        plt.axis("off")
    else:
        sns.barplot(data=frame, x="missing", y="field", color="steelblue")
        plt.xlim(0, 1)
        plt.xlabel("Share of baseline subjects missing")
        plt.ylabel("")
    plt.title(f"Missingness across {len(derived):,} subjects before listwise deletion")
    plt.tight_layout()
    plt.savefig(output_path, dpi=200)
    plt.close()


def _declared_packages() -> list[str]:
    # Runtime requirements of the installed distribution, extras excluded.
    try:
        requirements = metadata.requires(DISTRIBUTION) or []
    except metadata.PackageNotFoundError:
        logger.debug("%s is not installed; session info lists no packages", DISTRIBUTION)
        return []
    names = []
    for requirement in requirements:
        if "extra ==" in requirement:
            continue
        match = REQUIREMENT_NAME.match(requirement)
        if match:
            names.append(match.group(0))
    return names


def session_info(config: PipelineConfig) -> dict[str, object]:
    """Interpreter, dependency versions and the timepoints of this run."""

    versions: dict[str, str] = {}
    for name in _declared_packages():
        try:
            versions[name] = metadata.version(name)
        except metadata.PackageNotFoundError:
            continue
    return {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "python": platform.python_version(),
        "platform": platform.platform(),
        "baseline_label": config.baseline_label,
        "followup_label": config.followup_label,
        "base_path": str(config.base_path),
        "packages": versions,
    }


def _write_json(path: Path, payload: Mapping[str, object]) -> None:
    with path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, sort_keys=True, default=str)


def write_report(
    result: CohortResult,
    config: PipelineConfig,
    *,
    output_dir: Path | None = None,
    fit_models: bool = True,
) -> Path:
    """Persist the cohort, descriptive tables, model fits and figures.

    Artefacts land in ``<root>/<followup_label>/`` where the root is
    ``output_dir``, else ``config.output_dir``, else ``outputs/cohort``.
    """

    root = output_dir or config.output_dir or OUTPUT_ROOT
    out_dir = Path(root) / config.followup_label
    out_dir.mkdir(parents=True, exist_ok=True)
    cohort = result.cohort.copy()

    cohort_path = out_dir / "cohort.parquet"
    cohort.to_parquet(cohort_path, index=False)
    cohort.to_csv(out_dir / "cohort.csv", index=False)

    descriptives = describe_cohort(cohort, config)
    descriptives.to_csv(out_dir / "descriptives.csv", index=False)
    retention = compare_retention(result.derived, cohort, config)
    retention.to_csv(out_dir / "retention.csv", index=False)

    plot_missingness(result.derived, out_dir / "missingness.png")

    diagnostics = dict(result.diagnostics)
    model_lines: list[str] = []
    coefficient_tables: list[pd.DataFrame] = []
    model_failures: dict[str, str] = {}
    for volume in config.volume_columns:
        if volume not in cohort.columns:
            logger.warning("Volume %s not in cohort; skipping", volume)
            continue
        plot_volume_outcome(cohort, volume, config, out_dir / f"{volume}_vs_outcome.png")
        if not fit_models:
            continue
        try:
            fit = fit_mixed_model(cohort, volume, config)
        except (np.linalg.LinAlgError, ValueError) as exc:
            logger.error("Mixed model for %s failed: %s", volume, exc)
            model_failures[volume] = str(exc)
            continue
        coefficient_tables.append(fit.coefficients)
        with (out_dir / f"{volume}_mixedlm.txt").open("w", encoding="utf-8") as handle:
            handle.write(fit.result.summary().as_text())
        row = fit.coefficients.loc[fit.coefficients["term"] == volume].iloc[0]
        model_lines.append(
            f"{volume}: β={row['estimate']:.3f} (SE {row['std_err']:.3f}, p={row['pvalue']:.3g}), "
            f"converged={fit.converged}."
        )

    if coefficient_tables:
        pd.concat(coefficient_tables, ignore_index=True).to_csv(
            out_dir / "model_coefficients.csv", index=False
        )
    if model_failures:
        diagnostics["model_failures"] = model_failures

    missing = diagnostics.get("missing_by_column", {})
    worst = max(missing.items(), key=lambda kv: kv[1]) if missing else None
    summary_lines = [
        f"{len(cohort):,} subjects with complete {config.baseline_label} covariates and "
        f"{config.followup_label} outcome (from {diagnostics.get('rows_joined', len(cohort)):,} baseline subjects).",
        f"Listwise deletion removed {diagnostics.get('rows_dropped', 0):,} subjects"
        + (f"; most missing field {worst[0]} ({worst[1]:,})." if worst else "."),
        *model_lines,
    ]
    (out_dir / "summary.txt").write_text("\n".join(summary_lines) + "\n", encoding="utf-8")
    _write_json(out_dir / "diagnostics.json", diagnostics)
    _write_json(out_dir / "session_info.json", session_info(config))

    print("Cohort summary:")
    for line in summary_lines:
        print(f"  - {line}")
    logger.info("Saved cohort report to %s", out_dir)
    return out_dir
