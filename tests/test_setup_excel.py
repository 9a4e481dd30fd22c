"""Tests for the master workbook bootstrap script."""

from __future__ import annotations

import openpyxl
import pytest

from mandi_ledger import constants, setup_excel


def _write_config(directory, *, data_file="ledger.xlsx", schema=constants.EXPECTED_SCHEMA_VERSION):
    config_path = directory / "config.ini"
    config_path.write_text(
        f"[System]\nDataFile = {data_file}\nBusinessName = Test Mandi\nSchemaVersion = {schema}\n",
        encoding="utf-8",
    )
    return config_path


def test_create_master_workbook_writes_every_sheet(tmp_path):
    """Each sheet carries its bold header row with frozen panes."""

    path = setup_excel.create_master_workbook(tmp_path / "master.xlsx")
    workbook = openpyxl.load_workbook(path)

    assert workbook.sheetnames == list(constants.SHEET_COLUMNS)
    for sheet_name, columns in constants.SHEET_COLUMNS.items():
        sheet = workbook[sheet_name]
        assert [cell.value for cell in sheet[1]] == list(columns)
        assert sheet["A1"].font.bold
        assert sheet.freeze_panes == "A2"


def test_create_master_workbook_refuses_to_overwrite(tmp_path):
    """An existing workbook is only replaced with overwrite=True."""

    path = setup_excel.create_master_workbook(tmp_path / "master.xlsx")
    with pytest.raises(FileExistsError):
        setup_excel.create_master_workbook(path)
    assert setup_excel.create_master_workbook(path, overwrite=True) == path


def test_run_from_config_resolves_relative_data_file(tmp_path):
    """Relative DataFile entries are resolved next to config.ini."""

    output = setup_excel.run_from_config(_write_config(tmp_path))
    assert output == (tmp_path / "ledger.xlsx").resolve()
    assert output.exists()


def test_run_from_config_rejects_schema_mismatch(tmp_path):
    """The bootstrap only writes the schema version this package understands."""

    with pytest.raises(RuntimeError):
        setup_excel.run_from_config(_write_config(tmp_path, schema="0.9"))


def test_main_reports_success_and_existing_file(tmp_path, capsys):
    """main returns 0 on success and 1 when the workbook already exists."""

    config_path = _write_config(tmp_path)

    assert setup_excel.main(["--config", str(config_path)]) == 0
    assert "[SUCCESS]" in capsys.readouterr().out
    assert setup_excel.main(["--config", str(config_path)]) == 1
    assert "--force" in capsys.readouterr().out
    assert setup_excel.main(["--config", str(config_path), "--force"]) == 0


def test_main_missing_config_returns_error(tmp_path, capsys):
    """A missing configuration file is reported, not raised."""

    assert setup_excel.main(["--config", str(tmp_path / "absent.ini")]) == 1
    assert "[ERROR]" in capsys.readouterr().out
