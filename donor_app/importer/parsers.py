"""
Tabular file parsing for donor uploads.

The orchestrator only consumes ordered, header-keyed row dictionaries; this
module turns uploaded bytes into those rows for the formats we accept.
Delimited text is read with ``csv``; Excel workbooks with openpyxl (first
worksheet, first row as the header).
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, Iterable, Sequence
from zipfile import BadZipFile

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from donor_app.exceptions import ParseError

DELIMITERS = {
    ".csv": ",",
    ".tsv": "\t",
    ".txt": "\t",
}
WORKBOOK_EXTENSIONS = (".xlsx",)
SUPPORTED_EXTENSIONS: tuple[str, ...] = tuple(
    extension.lstrip(".") for extension in (*DELIMITERS, *WORKBOOK_EXTENSIONS)
)


def _sanitize_header(header: Any) -> str:
    token = _cell_text(header).strip()
    return token.lstrip("\ufeff")


def _cell_text(value: Any) -> str:
    """Render a spreadsheet cell the way it would appear in a CSV export."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, (date, time)):
        return value.isoformat()
    return str(value)


def _row_is_blank(row: dict[str, object | None]) -> bool:
    return all((value is None or (isinstance(value, str) and value.strip() == "")) for value in row.values())


@dataclass
class ParsedFile:
    headers: tuple[str, ...]
    rows: list[dict[str, str]] = field(default_factory=list)
    rows_skipped_blank: int = 0

    @property
    def total_rows(self) -> int:
        return len(self.rows)


class TabularFileParser:
    """Parse CSV/TSV and XLSX uploads into header-keyed rows."""

    def __init__(self, *, encodings: Sequence[str] = ("utf-8-sig",), skip_blank_rows: bool = True) -> None:
        self.encodings = tuple(encodings)
        self.skip_blank_rows = skip_blank_rows

    def parse(self, content: bytes, filename: str) -> list[dict[str, str]]:
        return self.parse_file(content, filename).rows

    def parse_file(self, content: bytes, filename: str) -> ParsedFile:
        extension = Path(filename or "").suffix.lower()
        if not isinstance(content, (bytes, bytearray)):
            raise ParseError("Upload content must be bytes.", details={"filename": filename})
        if extension in DELIMITERS:
            return self._parse_delimited(content, filename, DELIMITERS[extension])
        if extension in WORKBOOK_EXTENSIONS:
            return self._parse_workbook(content, filename)
        raise ParseError(
            f"Unsupported file type '{extension or filename}'. Upload a CSV, TSV or XLSX file.",
            details={"filename": filename},
        )

    def _parse_delimited(self, content: bytes, filename: str, delimiter: str) -> ParsedFile:
        text = self._decode(content, filename)
        reader = csv.DictReader(io.StringIO(text, newline=""), delimiter=delimiter)
        try:
            raw_headers = reader.fieldnames
        except csv.Error as exc:
            raise ParseError(f"Could not read header row: {exc}", details={"filename": filename}) from exc

        headers = self._headers(raw_headers, filename)
        reader.fieldnames = list(headers)

        parsed = ParsedFile(headers=headers)
        try:
            for raw_row in reader:
                row = {key: value for key, value in raw_row.items() if key is not None}
                self._append(parsed, row)
        except csv.Error as exc:
            raise ParseError(
                f"Malformed row near line {reader.line_num}: {exc}",
                details={"filename": filename, "line": reader.line_num},
            ) from exc
        return parsed

    def _parse_workbook(self, content: bytes, filename: str) -> ParsedFile:
        try:
            workbook = load_workbook(io.BytesIO(bytes(content)), read_only=True, data_only=True)
        except (BadZipFile, InvalidFileException, KeyError, ValueError) as exc:
            raise ParseError(f"Could not open workbook: {exc}", details={"filename": filename}) from exc

        try:
            if not workbook.worksheets:
                raise ParseError("Workbook has no worksheets.", details={"filename": filename})
            rows = workbook.worksheets[0].iter_rows(values_only=True)
            headers = self._headers(next(rows, None), filename)
            parsed = ParsedFile(headers=headers)
            for cells in rows:
                values = list(cells or ())[: len(headers)]
                values.extend([None] * (len(headers) - len(values)))
                self._append(parsed, dict(zip(headers, (_cell_text(value) for value in values))))
            return parsed
        finally:
            workbook.close()

    @staticmethod
    def _headers(raw_headers: Iterable[Any] | None, filename: str) -> tuple[str, ...]:
        if not raw_headers:
            raise ParseError("File is empty or has no header row.", details={"filename": filename})
        headers = tuple(_sanitize_header(header) for header in raw_headers)
        if not any(headers):
            raise ParseError("Header row is blank.", details={"filename": filename})
        return headers

    def _append(self, parsed: ParsedFile, row: dict[str, Any]) -> None:
        if self.skip_blank_rows and _row_is_blank(row):
            parsed.rows_skipped_blank += 1
            return
        parsed.rows.append({key: (value if value is not None else "") for key, value in row.items()})

    def _decode(self, content: bytes, filename: str) -> str:
        for encoding in self.encodings:
            try:
                return bytes(content).decode(encoding)
            except UnicodeDecodeError:
                continue
        raise ParseError(
            f"File is not valid {', '.join(self.encodings)} text.",
            details={"filename": filename},
        )


__all__ = ["TabularFileParser", "ParsedFile", "SUPPORTED_EXTENSIONS"]
