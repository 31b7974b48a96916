"""
Workbook loading: header normalization, renames, sheet aliases and errors.
"""

from datetime import datetime

import pandas as pd
import pytest

from hivcohort.errors import DataAccessError
from hivcohort.loader import choose_named_tables, load_sheets_as_tables, normalize_headers


def test_normalize_headers_snake_case_and_renames():
    df = pd.DataFrame(columns=["Person ID", "Concept ID", "Date (YYYY-MM-DD)", "Value:", "obs_id"])
    out = normalize_headers(df)
    assert list(out.columns) == ["patient_id", "concept", "obs_datetime", "value_numeric", "obs_id"]


def test_normalize_headers_keeps_existing_target_column():
    df = pd.DataFrame(columns=["person_id", "patient_id"])
    out = normalize_headers(df)
    assert list(out.columns) == ["person_id", "patient_id"]


def test_choose_named_tables_by_alias():
    tables = {
        "Obs": pd.DataFrame(),
        "Visits": pd.DataFrame(),
        "notes": pd.DataFrame(),
    }
    chosen = choose_named_tables(tables)
    assert set(chosen) == {"observations", "encounters"}


def test_load_sheets_as_tables(tmp_path):
    path = tmp_path / "export.xlsx"
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        pd.DataFrame([{"Person ID": 1, "Sex": "F"}]).to_excel(writer, sheet_name="patients", index=False)
        pd.DataFrame([{
            "Obs ID": 1, "Person ID": 1, "Concept ID": 856, "Date": datetime(2020, 1, 1), "Value": 40,
        }]).to_excel(writer, sheet_name="obs", index=False)

    tables = load_sheets_as_tables(str(path))
    assert set(tables) == {"patients", "obs"}
    assert list(tables["patients"].columns) == ["patient_id", "gender"]
    assert {"obs_id", "patient_id", "concept", "obs_datetime", "value_numeric"} == set(tables["obs"].columns)


def test_load_sheets_as_tables_missing_file(tmp_path):
    with pytest.raises(DataAccessError):
        load_sheets_as_tables(str(tmp_path / "missing.xlsx"))
