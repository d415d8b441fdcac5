import json

import run_cohort
from abcd_cohort import config as cfg

BASELINE = cfg.BASELINE_LABEL
FOLLOWUP = cfg.FOLLOWUP_LABEL
VOLUME = cfg.VOLUME_COLUMNS[0]


def _write_base(tmp_path):
    path = tmp_path / "base.csv"
    path.write_text(
        f"{cfg.SUBJECT_COLUMN},{cfg.EVENT_COLUMN},{cfg.SITE_COLUMN},{cfg.SEX_COLUMN},"
        f"{cfg.INCOME_COLUMN},{cfg.PDS_MALE_COLUMN},{cfg.PDS_FEMALE_COLUMN},{VOLUME},{cfg.OUTCOME_COLUMN}\n"
        f"A,{BASELINE},site01,1,8,2,,4100,\n"
        f"B,{BASELINE},site02,2,2,,3,3900,\n"
        f"C,{BASELINE},site02,2,999,,4,4010,\n"
        f"A,{FOLLOWUP},,,,,,,3\n"
        f"B,{FOLLOWUP},,,,,,,0\n"
        f"C,{FOLLOWUP},,,,,,,1\n",
        encoding="utf-8",
    )
    return path


def test_main_writes_report_from_json_config(tmp_path):
    base_path = _write_base(tmp_path)
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps(
            {
                "base_path": str(base_path),
                "categorical_columns": [
                    cfg.EVENT_COLUMN,
                    cfg.SITE_COLUMN,
                    cfg.SEX_COLUMN,
                    cfg.INCOME_COLUMN,
                ],
                "covariate_columns": [
                    cfg.SUBJECT_COLUMN,
                    cfg.SITE_COLUMN,
                    cfg.SEX_COLUMN,
                    cfg.INCOME_COLUMN,
                    cfg.PDS_MALE_COLUMN,
                    cfg.PDS_FEMALE_COLUMN,
                    VOLUME,
                ],
                "volume_columns": [VOLUME],
                "variance_components": {},
            }
        ),
        encoding="utf-8",
    )

    exit_code = run_cohort.main(
        [
            "--config",
            str(config_path),
            "--output-dir",
            str(tmp_path / "out"),
            "--skip-models",
        ]
    )

    assert exit_code == 0
    summary = (tmp_path / "out" / FOLLOWUP / "summary.txt").read_text(encoding="utf-8")
    assert summary.startswith("2 subjects")


def test_main_reports_failure_without_writing_output(tmp_path):
    base_path = _write_base(tmp_path)

    exit_code = run_cohort.main(
        ["--base-path", str(base_path), "--output-dir", str(tmp_path / "out")]
    )

    # The default covariate set names columns this file does not have.
    assert exit_code == 1
    assert not (tmp_path / "out").exists()


def test_augment_argument_parsing(tmp_path):
    args = run_cohort.parse_args(
        ["--base-path", "base.csv", "--augment", f"{cfg.OUTCOME_COLUMN}=su.csv"]
    )
    config = run_cohort.build_config(args)

    assert config.augment_sources[0].variable == cfg.OUTCOME_COLUMN
    assert str(config.augment_sources[0].path) == "su.csv"


def test_config_without_base_path_exits_with_error(tmp_path, caplog):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"volume_columns": [VOLUME]}), encoding="utf-8")

    exit_code = run_cohort.main(["--config", str(config_path), "--output-dir", str(tmp_path / "out")])

    assert exit_code == 1
    assert "Invalid run configuration" in caplog.text
    assert not (tmp_path / "out").exists()


def test_config_with_unknown_key_exits_with_error(tmp_path, caplog):
    base_path = _write_base(tmp_path)
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps({"base_path": str(base_path), "volumes": [VOLUME]}), encoding="utf-8"
    )

    exit_code = run_cohort.main(["--config", str(config_path)])

    assert exit_code == 1
    assert "volumes" in caplog.text


def test_missing_config_file_exits_with_error(tmp_path, caplog):
    exit_code = run_cohort.main(["--config", str(tmp_path / "absent.json")])

    assert exit_code == 1
    assert "absent.json" in caplog.text


def test_missing_base_path_exits_with_error(caplog):
    exit_code = run_cohort.main([])

    assert exit_code == 1
    assert "--base-path is required" in caplog.text
