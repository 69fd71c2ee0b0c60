import pandas as pd

# Normalised headers that need renaming -> aggregate field names
RENAME_MAP = {
    "firstname": "first_name",
    "lastname": "last_name",
    "fullname": "full_name",
    "address_detail": "address",
    "visit_date": "ga_date",
    "event_type": "type",
    "event_title": "title",
}


def normalize_headers(df: pd.DataFrame) -> pd.DataFrame:
    """
    Normalise headers to snake_case lowercase, then apply RENAME_MAP:
    "First Name (ชื่อ)" -> "first_name", "Refer_Out_Date" -> "refer_out_date".
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
            if orig in df.columns
        }
    )


def load_sheets_as_tables(workbook_path: str) -> dict[str, pd.DataFrame]:
    """
    Read each worksheet into a DataFrame:
      - first row = header, no index column
      - every cell read as text so HNs and ids keep leading zeros
      - headers normalised by `normalize_headers`
    """
    excel = pd.ExcelFile(workbook_path, engine="openpyxl")
    tables: dict[str, pd.DataFrame] = {}

    for sheet_name in excel.sheet_names:
        df = pd.read_excel(
            excel, sheet_name=sheet_name, header=0, index_col=None, dtype=str, engine="openpyxl"
        )
        tables[sheet_name] = normalize_headers(df)

    return tables
