"""
Import/export of asset rows (delimited text and Excel), driven by the schema registry
"""
import csv
import io
import re
import zipfile
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

import pandas as pd

from .schema import FieldDefinition

_FLOAT_PREFIX = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


def parse_number(value: Any) -> float:
    """Leading-number parse; anything unparseable becomes 0."""
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value) if value == value else 0.0
    match = _FLOAT_PREFIX.match(str(value).strip())
    if not match:
        return 0.0
    return float(match.group(0))


def coerce_value(definition: FieldDefinition, raw: Any) -> Any:
    if definition.type == "number":
        return parse_number(raw)
    if raw is None:
        return ""
    return str(raw).strip()


class ImportFormatError(ValueError):
    """Uploaded content that cannot be turned into rows."""


def decode_upload(content: Union[bytes, str]) -> str:
    if isinstance(content, str):
        return content
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise ImportFormatError(f"Import is not UTF-8 text ({e.reason} at byte {e.start}).") from e


def detect_delimiter(text: str) -> str:
    lines = text.splitlines()
    header = lines[0] if lines else ""
    return "\t" if "\t" in header else ","


def read_delimited_rows(text: str) -> List[List[str]]:
    """Split import text into data rows; the header line is dropped.

    Line endings inside quoted cells are kept as they are.
    """
    reader = csv.reader(io.StringIO(text, newline=""), delimiter=detect_delimiter(text))
    try:
        rows = list(reader)
    except csv.Error as e:
        raise ImportFormatError(f"Malformed delimited text: {e}") from e
    return rows[1:]


def read_excel_rows(source: Union[str, Path, bytes]) -> List[List[str]]:
    """First sheet of a workbook as positional rows (header row dropped)."""
    if isinstance(source, bytes):
        source = io.BytesIO(source)
    try:
        df = pd.read_excel(source, sheet_name=0, dtype=object)
    except (ValueError, KeyError, zipfile.BadZipFile) as e:
        raise ImportFormatError(f"Unreadable workbook: {e}") from e
    rows = []
    for values in df.itertuples(index=False, name=None):
        cells = []
        for val in values:
            if pd.isna(val):
                cells.append("")
            elif isinstance(val, (date, datetime)):
                cells.append(val.date().isoformat() if isinstance(val, datetime) else val.isoformat())
            else:
                cells.append(str(val))
        rows.append(cells)
    return rows


def row_to_fields(row: Sequence[Any], fields: Sequence[FieldDefinition]) -> Dict[str, Any]:
    """Zip positional cells to field ids, coercing by declared type.

    Cells beyond the schema are dropped; fields without a cell stay absent.
    """
    out: Dict[str, Any] = {}
    for index, definition in enumerate(fields):
        if index < len(row):
            out[definition.id] = coerce_value(definition, row[index])
    return out


def is_blank_row(row: Sequence[Any]) -> bool:
    return not row or (len(row) == 1 and not str(row[0]).strip())


# ---------------- Export ----------------

def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def export_csv_text(records: Iterable[Dict[str, Any]], fields: Sequence[FieldDefinition]) -> str:
    """CSV with a label header row and every data cell double-quoted."""
    buf = io.StringIO()
    header = csv.writer(buf, lineterminator="\n")
    header.writerow([f.label for f in fields])
    body = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    for record in records:
        body.writerow([_cell(record.get(f.id)) for f in fields])
    return buf.getvalue().rstrip("\n")


def export_filename(ext: str = "csv", when: Optional[date] = None) -> str:
    when = when or date.today()
    return f"inventory_export_{when.isoformat()}.{ext}"


def export_excel(records: Iterable[Dict[str, Any]], fields: Sequence[FieldDefinition], path: Union[str, Path]) -> str:
    """Write the records to an .xlsx workbook with label headers."""
    rows = [[record.get(f.id, "") for f in fields] for record in records]
    df = pd.DataFrame(rows, columns=[f.label for f in fields])
    df.to_excel(path, index=False)
    return str(path)
