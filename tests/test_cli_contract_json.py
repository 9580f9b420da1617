from __future__ import annotations

import math
from pathlib import Path
from typing import Any

import pytest

from tests.helpers_3mf import box_object_xml, model_xml, write_3mf
from tests.helpers_cli import repo_root, run_cli, run_cli_json


def _box_project(tmp_path: Path, name: str = "box.3mf", size=(50, 50, 30)) -> Path:
    return write_3mf(tmp_path, {"3D/3dmodel.model": model_xml(box_object_xml(1, *size, name="Box"))}, name=name)


def _assert_finite_non_negative(value: Any, label: str) -> None:
    assert isinstance(value, (int, float)) and not isinstance(
        value, bool
    ), f"{label} should be numeric, got {type(value).__name__}"
    assert math.isfinite(value), f"{label} should be finite, got {value}"
    assert value >= 0, f"{label} should be >= 0, got {value}"


def test_cli_json_single_file_contract(tmp_path: Path) -> None:
    project = _box_project(tmp_path)

    returncode, payload, stderr = run_cli_json([str(project), "--json"], cwd=repo_root())

    assert returncode == 0, f"CLI failed with return code {returncode}. stderr:\n{stderr}"
    for key in ("success", "count", "files", "summary", "errors", "count_ok", "count_failed", "time_s"):
        assert key in payload, f"JSON payload missing '{key}'. stderr:\n{stderr}"
    assert payload["success"] is True
    assert (payload["count"], payload["count_ok"], payload["count_failed"]) == (1, 1, 0)

    first = payload["files"][0]
    assert first["file"] == "box.3mf"
    assert first["strategy"] == "geometry"
    assert first["config_found"] is False and first["real_values_found"] is False
    assert {w["kind"] for w in first["warnings"]} >= {"config_not_found", "no_real_values"}

    plate = first["slicer_data"]["plates"][0]
    assert set(plate) == {"plate_id", "plate_name", "filament_weight_g", "print_hours",
                          "layer_height_mm", "infill_pct", "models"}
    assert plate["filament_weight_g"] == pytest.approx(46.25)
    assert plate["print_hours"] == pytest.approx(3.9)
    for key in ("filament_weight_g", "print_hours", "layer_height_mm"):
        _assert_finite_non_negative(plate[key], key)

    summary = payload["summary"]
    assert summary["plates"] == 1
    assert summary["total_weight_g"] == pytest.approx(46.25)


def test_cli_material_changes_density(tmp_path: Path) -> None:
    project = _box_project(tmp_path)

    returncode, payload, stderr = run_cli_json([str(project), "--json", "--material", "Enduse PETG"], cwd=repo_root())

    assert returncode == 0, stderr
    assert payload["files"][0]["slicer_data"]["total_weight_g"] == pytest.approx(37.0 * 1.27)


def test_cli_set_override(tmp_path: Path) -> None:
    project = _box_project(tmp_path)

    returncode, payload, stderr = run_cli_json(
        [str(project), "--json", "--set", "estimation.complexity_factor=3.0"], cwd=repo_root()
    )

    assert returncode == 0, stderr
    assert payload["files"][0]["slicer_data"]["total_time_h"] == pytest.approx(7.8)


def test_cli_json_batch_partial_failure_emits_json(tmp_path: Path) -> None:
    good = _box_project(tmp_path, "a_good.3mf", size=(10, 10, 10))
    broken = tmp_path / "b_broken.3mf"
    broken.write_bytes(b"not a zip archive")
    missing = tmp_path / "c_missing.3mf"

    returncode, payload, stderr = run_cli_json(
        [str(good), str(broken), str(missing), "--json", "--workers", "2"], cwd=repo_root()
    )

    assert returncode == 1, f"partial failure should exit 1. stderr:\n{stderr}"
    assert payload["success"] is False
    assert payload["count"] == 3
    assert payload["count_ok"] == 1 and payload["count_failed"] == 2
    assert [f["file"] for f in payload["files"]] == ["a_good.3mf", "b_broken.3mf", "c_missing.3mf"]
    assert {e["file"] for e in payload["errors"]} == {"b_broken.3mf", "c_missing.3mf"}

    broken_entry = payload["files"][1]
    assert broken_entry["slicer_data"]["plates"] == []
    assert broken_entry["errors"][0]["kind"] == "archive_unreadable"
    assert payload["summary"]["plates"] == 1


def test_cli_unknown_material_is_usage_error(tmp_path: Path) -> None:
    project = _box_project(tmp_path)

    completed = run_cli([str(project), "--json", "--material", "Unobtainium"], cwd=repo_root())

    assert completed.returncode == 2
    assert "Unobtainium" in completed.stderr


def test_cli_bad_override_and_deadline_are_usage_errors(tmp_path: Path) -> None:
    project = _box_project(tmp_path)

    assert run_cli([str(project), "--set", "nokey"], cwd=repo_root()).returncode == 2
    assert run_cli([str(project), "--deadline", "0"], cwd=repo_root()).returncode == 2


def test_cli_missing_config_dir_is_config_error(tmp_path: Path) -> None:
    project = _box_project(tmp_path)

    completed = run_cli([str(project), "--config-dir", str(tmp_path / "nowhere")], cwd=repo_root())

    assert completed.returncode == 2
    assert "Ошибка конфигурации" in completed.stderr


def test_cli_text_report(tmp_path: Path) -> None:
    project = _box_project(tmp_path)

    completed = run_cli([str(project), "--text"], cwd=repo_root())

    assert completed.returncode == 0, completed.stderr
    out = completed.stdout
    assert "Файл: box.3mf" in out
    assert "46.25 г" in out
    assert "ИТОГО" in out
    assert "No slicer totals found" in out

    quiet = run_cli([str(project), "--quiet-warnings"], cwd=repo_root()).stdout
    assert "No slicer totals found" not in quiet
