"""Build the baseline/follow-up cohort and write its report."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from abcd_cohort import report
from abcd_cohort.config import FOLLOWUP_LABEL, AugmentSource, PipelineConfig
from abcd_cohort.errors import CohortPipelineError
from abcd_cohort.pipeline import run_pipeline

logger = logging.getLogger("run_cohort")


def _augment_source(value: str) -> AugmentSource:
    variable, sep, path = value.partition("=")
    if not sep or not variable or not path:
        raise argparse.ArgumentTypeError(f"Expected VARIABLE=PATH, got {value!r}")
    return AugmentSource(variable=variable, path=Path(path))


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Construct the complete-case cohort and fit mixed models."
    )
    parser.add_argument(
        "--base-path",
        type=Path,
        default=None,
        help="Base subject/event dataset (required unless given in --config).",
    )
    parser.add_argument(
        "--followup-label",
        default=None,
        help=f"Event label of the outcome timepoint (defaults to {FOLLOWUP_LABEL}).",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional JSON file with PipelineConfig fields.",
    )
    parser.add_argument(
        "--augment",
        type=_augment_source,
        action="append",
        default=[],
        metavar="VARIABLE=PATH",
        help="Join VARIABLE from PATH onto the base table; may repeat.",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Root directory for outputs (defaults to outputs/cohort).",
    )
    parser.add_argument(
        "--skip-models",
        action="store_true",
        help="Write descriptives and figures only.",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> PipelineConfig:
    overrides = {
        "base_path": args.base_path,
        "followup_label": args.followup_label,
        "output_dir": args.output_dir,
    }
    if args.config is not None:
        try:
            config = PipelineConfig.from_json(args.config, **overrides)
        except TypeError as exc:
            raise ValueError(f"Invalid configuration in {args.config}: {exc}") from exc
    else:
        if args.base_path is None:
            raise ValueError("--base-path is required when no --config is given.")
        config = PipelineConfig(
            **{key: value for key, value in overrides.items() if value is not None}
        )
    if args.augment:
        config.augment_sources = (*config.augment_sources, *args.augment)
    return config


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    args = parse_args(argv)
    try:
        config = build_config(args)
    except (ValueError, OSError) as exc:
        logger.error("Invalid run configuration: %s", exc)
        return 1
    try:
        result = run_pipeline(config)
    except (CohortPipelineError, OSError) as exc:
        logger.error("Cohort construction failed: %s", exc)
        return 1
    report.write_report(result, config, fit_models=not args.skip_models)
    print("Cohort run completed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
