"""Tests for the workbook bootstrap script."""

from __future__ import annotations

import openpyxl
import pytest

from produce_ledger import data_manager, setup_excel


def test_create_master_workbook_writes_bold_headers(tmp_path):
    destination = setup_excel.create_master_workbook(tmp_path / "nested" / "ledger.xlsx")

    workbook = openpyxl.load_workbook(destination)

    assert workbook.sheetnames == list(setup_excel.SHEET_COLUMNS)
    items = workbook["Items"]
    assert items.cell(row=1, column=1).value == "ItemID"
    assert items.cell(row=1, column=1).font.bold
    assert items.max_row == 1


def test_create_master_workbook_refuses_to_overwrite(tmp_path):
    destination = setup_excel.create_master_workbook(tmp_path / "ledger.xlsx")

    with pytest.raises(FileExistsError):
        setup_excel.create_master_workbook(destination)
    assert setup_excel.create_master_workbook(destination, overwrite=True) == destination


def test_load_settings_resolves_relative_data_file(tmp_path):
    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nDataFile = data/ledger.xlsx\nBusinessName = Mandi\n")

    settings = setup_excel.load_settings(config_path)

    assert settings.data_file == (tmp_path / "data" / "ledger.xlsx").resolve()
    assert settings.business_name == "Mandi"


def test_load_settings_requires_system_section(tmp_path):
    config_path = tmp_path / "config.ini"
    config_path.write_text("[Other]\nkey = value\n")

    with pytest.raises(KeyError):
        setup_excel.load_settings(config_path)


def test_main_creates_workbook_from_config(tmp_path, capsys):
    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nDataFile = ledger.xlsx\nBusinessName = Mandi\n")

    assert setup_excel.main(["--config", str(config_path)]) == 0
    assert "[SUCCESS]" in capsys.readouterr().out
    data_manager.validate_workbook(data_manager.open_workbook(tmp_path / "ledger.xlsx"))

    assert setup_excel.main(["--config", str(config_path)]) == 1
    assert "--force" in capsys.readouterr().out
    assert setup_excel.main(["--config", str(config_path), "--force"]) == 0


def test_main_reports_missing_config(tmp_path, capsys):
    assert setup_excel.main(["--config", str(tmp_path / "absent.ini")]) == 1
    assert "[ERROR]" in capsys.readouterr().out
