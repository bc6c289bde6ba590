from __future__ import annotations

import json
from pathlib import Path

import pytest

from scrna_explorer.config import (
    QC_PARAMS,
    get_config,
    get_config_summary,
    load_json_config,
    validate_config,
)


def test_default_config_is_valid_copy():
    cfg = get_config()
    assert cfg["preset"] == "default"
    assert validate_config(cfg) is True

    cfg["qc"]["nmads"] = 99
    assert QC_PARAMS["nmads"] == 3


def test_preset_changes_nmads():
    assert get_config("stringent")["qc"]["nmads"] < get_config("permissive")["qc"]["nmads"]


def test_unknown_preset_rejected():
    with pytest.raises(ValueError, match="Unknown preset"):
        get_config("lenient")


def test_overrides_merge_nested_sections():
    cfg = get_config(
        overrides={
            "clustering": {"methods": ["walktrap", "leiden"], "selection": "leiden"},
            "qc": {"directions": {"total_counts": "lower"}},
        }
    )
    assert cfg["clustering"]["selection"] == "leiden"
    assert cfg["qc"]["directions"]["total_counts"] == "lower"
    assert cfg["qc"]["directions"]["pct_counts_mt"] == "higher"


def test_overrides_from_json_file(tmp_path: Path):
    path = tmp_path / "overrides.json"
    path.write_text(json.dumps({"normalization": {"method": "libsize"}}), encoding="utf-8")
    cfg = get_config(overrides=path)
    assert cfg["normalization"]["method"] == "libsize"


def test_unknown_section_rejected():
    with pytest.raises(ValueError, match="Unknown config sections"):
        get_config(overrides={"doublets": {}})


def test_validation_collects_all_errors():
    with pytest.raises(ValueError) as excinfo:
        get_config(
            overrides={
                "clustering": {"methods": ["kmeans"]},
                "markers": {"pval_type": "some"},
                "annotation": {"tune_threshold": 1.5},
            }
        )
    message = str(excinfo.value)
    assert "kmeans" in message
    assert "pval_type" in message
    assert "tune_threshold" in message


def test_selection_must_be_computed_or_auto():
    cfg = get_config(overrides={"clustering": {"selection": "auto"}})
    assert cfg["clustering"]["selection"] == "auto"
    with pytest.raises(ValueError, match="selection"):
        get_config(overrides={"clustering": {"selection": "louvain"}})


def test_invalid_json_reports_line_and_column(tmp_path: Path):
    bad = tmp_path / "bad.json"
    bad.write_text('{"qc": 1,}\n', encoding="utf-8")
    with pytest.raises(ValueError, match=r"line \d+, column \d+"):
        load_json_config(bad)


def test_non_object_json_config_rejected(tmp_path: Path):
    bad = tmp_path / "list.json"
    bad.write_text(json.dumps([1, 2, 3]), encoding="utf-8")
    with pytest.raises(ValueError, match="expected JSON object"):
        load_json_config(bad)


def test_non_json_extension_rejected(tmp_path: Path):
    bad = tmp_path / "cfg.yaml"
    bad.write_text("{}", encoding="utf-8")
    with pytest.raises(ValueError, match="Use a .json config file"):
        load_json_config(bad)


def test_summary_mentions_active_choices():
    summary = get_config_summary(get_config("stringent"))
    assert "stringent" in summary
    assert "walktrap" in summary
