"""Spreadsheet/CSV parsing into StructuredDocument records.

The header row is the first row with more than two non-empty cells so banner or
title rows above the real table are skipped.
"""

from __future__ import annotations

import base64
import binascii
import csv
import io
import logging
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any, Dict, Iterable, List, Optional, Sequence

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from .errors import DocumentParseError

logger = logging.getLogger("dashboard.documents")

PREVIEW_ROWS = 5
HEADER_MIN_CELLS = 2

Row = Dict[str, Any]


@dataclass(frozen=True)
class StructuredDocument:
    """Parsed table: unique field names, row count, preview rows, and all rows."""
    fields: List[str] = field(default_factory=list)
    row_count: int = 0
    preview: List[Row] = field(default_factory=list)
    full_data: List[Row] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.fields

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fields": list(self.fields),
            "rowCount": self.row_count,
            "preview": [dict(row) for row in self.preview],
            "fullData": [dict(row) for row in self.full_data],
        }


def build_structured_document(data: bytes, mime_type: str) -> StructuredDocument:
    """Purpose: Parse uploaded bytes into a StructuredDocument by declared mime type.
    Inputs/Outputs: Inputs are raw file bytes and the mime type; output is a StructuredDocument.
    Side Effects / State: None.
    Dependencies: Uses openpyxl for workbooks and the csv module for CSV text.
    Failure Modes: Malformed workbooks or undecodable CSV raise DocumentParseError; unsupported
        mime types return an empty document (callers check ``is_empty``).
    If Removed: Uploaded documents cannot feed charts or document analysis.
    Testing Notes: Parse a CSV with a banner line and confirm the real header is detected.
    """
    # Route on the declared mime type; unknown types give the empty document.
    mime = (mime_type or "").lower()
    if is_spreadsheet_mime(mime):
        rows = _read_workbook_rows(data)
    elif mime.endswith("csv"):
        rows = _read_csv_rows(data)
    else:
        logger.info("unsupported mime type=%s; returning empty document", mime_type)
        return StructuredDocument()
    return rows_to_document(rows)


def is_spreadsheet_mime(mime_type: str) -> bool:
    mime = (mime_type or "").lower()
    return "excel" in mime or "spreadsheet" in mime


def is_tabular_mime(mime_type: str) -> bool:
    """True for the mime types build_structured_document can parse into rows."""
    return is_spreadsheet_mime(mime_type) or (mime_type or "").lower().endswith("csv")


def decode_base64_file(encoded: str) -> bytes:
    """Decode a base64 upload, tolerating a ``data:...;base64,`` prefix."""
    payload = encoded or ""
    if payload.startswith("data:") and "," in payload:
        payload = payload.split(",", 1)[1]
    try:
        return base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as exc:
        raise DocumentParseError(f"Uploaded file is not valid base64: {exc}") from exc


def rows_to_document(rows: Sequence[Sequence[Any]]) -> StructuredDocument:
    """Purpose: Build the document from raw cell rows (header detection + row mapping).
    Inputs/Outputs: Input is a sequence of cell rows; output is a StructuredDocument.
    Side Effects / State: None.
    Dependencies: Uses find_header_index, unique_fields, and normalize_cell.
    Failure Modes: None; an all-blank sheet produces the empty document.
    If Removed: Workbook and CSV paths would need their own row mapping.
    Testing Notes: Rows shorter than the header must map missing cells to None.
    """
    # Drop blank rows first so header detection and counts ignore them.
    non_blank = [list(row) for row in rows if not _is_blank_row(row)]
    if not non_blank:
        return StructuredDocument()

    header_index = find_header_index(non_blank)
    fields = unique_fields(non_blank[header_index])
    full_data: List[Row] = []
    for raw in non_blank[header_index + 1 :]:
        record: Row = {}
        for idx, name in enumerate(fields):
            cell = raw[idx] if idx < len(raw) else None
            record[name] = normalize_cell(cell)
        full_data.append(record)

    return StructuredDocument(
        fields=fields,
        row_count=len(full_data),
        preview=full_data[:PREVIEW_ROWS],
        full_data=full_data,
    )


def find_header_index(rows: Sequence[Sequence[Any]]) -> int:
    for idx, row in enumerate(rows):
        if sum(1 for cell in row if not _is_empty_cell(cell)) > HEADER_MIN_CELLS:
            return idx
    return 0


def unique_fields(header: Iterable[Any]) -> List[str]:
    """Stringify header cells, naming blanks ``column_N`` and suffixing duplicates."""
    fields: List[str] = []
    seen: Dict[str, int] = {}
    for idx, cell in enumerate(header):
        name = "" if _is_empty_cell(cell) else str(normalize_cell(cell)).strip()
        if not name:
            name = f"column_{idx + 1}"
        if name in seen:
            seen[name] += 1
            candidate = f"{name}_{seen[name]}"
            while candidate in seen:
                seen[name] += 1
                candidate = f"{name}_{seen[name]}"
            name = candidate
        seen.setdefault(name, 1)
        fields.append(name)
    return fields


def normalize_cell(cell: Any) -> Any:
    if cell is None:
        return None
    if isinstance(cell, (bool, int, float, str)):
        return cell
    if isinstance(cell, (datetime, date, time)):
        return cell.isoformat()
    return str(cell)


def _read_workbook_rows(data: bytes) -> List[List[Any]]:
    # First worksheet only; formulas resolve to their cached values.
    try:
        workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as exc:
        raise DocumentParseError(f"Could not read spreadsheet: {exc}") from exc
    try:
        if not workbook.worksheets:
            return []
        sheet = workbook.worksheets[0]
        return [list(row) for row in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()


def _read_csv_rows(data: bytes) -> List[List[Any]]:
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise DocumentParseError(f"CSV is not valid UTF-8: {exc}") from exc
    reader = csv.reader(io.StringIO(text.strip()))
    return [[cell.strip() or None for cell in row] for row in reader]


def _is_empty_cell(cell: Any) -> bool:
    return cell is None or (isinstance(cell, str) and not cell.strip())


def _is_blank_row(row: Optional[Sequence[Any]]) -> bool:
    return not row or all(_is_empty_cell(cell) for cell in row)
