"""
Manifest input/output
Reads raw manifest rows from CSV or Excel and writes the generated
document manifest workbook.
"""

import csv
import io
import os
from typing import Any, Dict, List

try:
    import openpyxl
    from openpyxl.styles import Font
    from openpyxl.utils import get_column_letter
    HAS_OPENPYXL = True
except ImportError:
    HAS_OPENPYXL = False


MANIFEST_NAME = "DOCUMENT_MANIFEST.xlsx"
MANIFEST_SHEET = "Document Manifest"

# Column header -> manifest row key, in output order.
MANIFEST_COLUMNS = (
    ('Bates Number', 'sequence_id'),
    ('Group', 'group'),
    ('Document ID', 'id'),
    ('Date', 'date'),
    ('Settlement Date', 'settlement_date'),
    ('Type', 'type'),
    ('Asset Class', 'asset_class'),
    ('Counterparty', 'counterparty'),
    ('Value', 'value'),
    ('Source File', 'source_id'),
    ('Page', 'page_number'),
    ('Priority', 'priority'),
)

EXCEL_EXTENSIONS = ('.xlsx', '.xlsm')


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def read_manifest(path: str) -> List[Dict[str, Any]]:
    """
    Read manifest rows keyed by their header names

    Args:
        path: .csv, .xlsx or .xlsm file; only the first worksheet is read

    Returns:
        List of row dicts; fully blank rows are dropped
    """
    extension = os.path.splitext(path)[1].lower()
    if extension == '.csv':
        return _read_csv(path)
    if extension in EXCEL_EXTENSIONS:
        return _read_xlsx(path)
    raise ValueError(f"Unsupported manifest format: {extension or path}")


def _read_csv(path: str) -> List[Dict[str, Any]]:
    rows = []
    with open(path, 'r', encoding='utf-8-sig', newline='') as handle:
        reader = csv.DictReader(handle)
        for record in reader:
            row = {key.strip(): value for key, value in record.items() if key is not None and key.strip()}
            if all(_is_blank(value) for value in row.values()):
                continue
            rows.append(row)
    return rows


def _read_xlsx(path: str) -> List[Dict[str, Any]]:
    if not HAS_OPENPYXL:
        raise ImportError("openpyxl library is required for Excel manifests")

    wb = openpyxl.load_workbook(path, read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0]
        values = ws.iter_rows(values_only=True)
        header = next(values, None)
        if header is None:
            return []
        columns = [str(name).strip() if name is not None else None for name in header]

        rows = []
        for record in values:
            row = {
                column: value
                for column, value in zip(columns, record)
                if column
            }
            if all(_is_blank(value) for value in row.values()):
                continue
            rows.append(row)
        return rows
    finally:
        wb.close()


def write_manifest_xlsx(manifest_rows: List[Dict[str, Any]]) -> bytes:
    """Render manifest rows into an Excel workbook and return its bytes."""
    if not HAS_OPENPYXL:
        raise ImportError("openpyxl library is required to write the manifest")

    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = MANIFEST_SHEET

    for col, (header, _) in enumerate(MANIFEST_COLUMNS, 1):
        cell = ws.cell(row=1, column=col, value=header)
        cell.font = Font(bold=True)
        ws.column_dimensions[get_column_letter(col)].width = max(12, len(header) + 4)

    for row_index, entry in enumerate(manifest_rows, 2):
        for col, (_, key) in enumerate(MANIFEST_COLUMNS, 1):
            ws.cell(row=row_index, column=col, value=entry.get(key))

    ws.freeze_panes = "A2"
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()
