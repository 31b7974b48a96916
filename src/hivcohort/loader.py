import pandas as pd

from .errors import DataAccessError

# Columns that need renaming → store table fields
RENAME_MAP = {
    # identifiers as exported by OpenMRS
    "person_id": "patient_id",
    "concept_id": "concept",
    "encounter_type_id": "encounter_type",
    "program_id": "program",
    "location_id": "location",
    # obs values
    "value": "value_numeric",
    "answer": "value_coded",
    # dates
    "date": "obs_datetime",
    "encounter_date": "encounter_datetime",
    "enrollment_date": "date_enrolled",
    "completion_date": "date_completed",
    "sex": "gender",
}

# Friendly aliases → store tables
KNOWN_SHEET_ALIASES: dict[str, set[str]] = {
    "patients": {"patient", "patients", "person", "demographics"},
    "encounters": {"encounter", "encounters", "visits"},
    "observations": {"observation", "observations", "obs"},
    "enrollments": {"enrollment", "enrollments", "programs", "patient_program"},
    "metadata": {"metadata", "dictionary"},
}


def normalize_headers(df: pd.DataFrame) -> pd.DataFrame:
    """
    - normalize all headers to snake_case lowercase
    - apply renames from RENAME_MAP
    """
    df = df.copy()
    df.columns = (
        df.columns.astype(str).str.strip()
        .str.replace(r"\s*\(.*?\)", "", regex=True)  # drop any "(…)"
        .str.replace(r"\s+", "_", regex=True)  # spaces → underscore
        .str.replace(":", "", regex=False)  # drop colons
        .str.lower()
    )
    return df.rename(
        columns={
            orig: target
            for orig, target in RENAME_MAP.items()
            if orig in df.columns and target not in df.columns
        }
    )


def load_sheets_as_tables(workbook_path: str) -> dict[str, pd.DataFrame]:
    """
    Read each worksheet into a DataFrame:
      - first row = header
      - headers normalized by normalize_headers
    """
    try:
        excel = pd.ExcelFile(workbook_path, engine="openpyxl")
        tables: dict[str, pd.DataFrame] = {}
        for sheet_name in excel.sheet_names:
            df = pd.read_excel(excel, sheet_name=sheet_name, header=0, engine="openpyxl")
            tables[sheet_name] = normalize_headers(df)
    except (OSError, ValueError) as e:
        raise DataAccessError(f"Failed to read workbook {workbook_path!r}: {e}") from e

    return tables


def choose_named_tables(tables: dict[str, pd.DataFrame]) -> dict[str, pd.DataFrame]:
    """
    Pick the store tables out of a workbook by sheet name (plus common aliases).
    Sheets that match no alias are left out.
    """
    selected: dict[str, pd.DataFrame] = {}
    for kind, aliases in KNOWN_SHEET_ALIASES.items():
        for sheet_name, df in tables.items():
            if sheet_name.strip().casefold() in aliases:
                selected[kind] = df
                break
    return selected
