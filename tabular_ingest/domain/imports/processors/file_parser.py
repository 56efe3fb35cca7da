"""
Spreadsheet and CSV parsing into open-schema row dictionaries.

Both formats produce a :class:`ParseResult`: the accepted rows keyed by
header, the cleaned headers, counts, and one error entry per row that could
not be parsed. A bad row never aborts the file; only a file that cannot be
opened at all raises :class:`FileParseError`.
"""
import csv
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import pandas as pd

from tabular_ingest.core.errors import FileParseError, RowTransformError, UnsupportedFileTypeError
from tabular_ingest.domain.imports.models import ImportErrorEntry
from tabular_ingest.domain.imports.processors.delimiter import detect_file_delimiter
from tabular_ingest.utils.serialization import _make_json_safe

logger = logging.getLogger(__name__)

FORMAT_SPREADSHEET = "spreadsheet"
FORMAT_CSV = "csv"

SPREADSHEET_EXTENSIONS = {".xlsx", ".xlsm", ".xls"}
CSV_EXTENSIONS = {".csv", ".txt"}
_GENERIC_MIME_TYPES = {"", "application/octet-stream", "text/plain", "binary/octet-stream"}

_NUMERIC_PATTERN = re.compile(r"^-?\d+(\.\d+)?$")
_DAY_MONTH_YEAR_PATTERN = re.compile(r"^(\d{2})-(\d{2})-(\d{4})$")

RowTransform = Callable[[Dict[str, Any], int], Optional[Dict[str, Any]]]


@dataclass
class ParseOptions:
    max_rows: Optional[int] = None
    include_empty_rows: bool = False
    # Receives the row and its 0-based data index; returning None skips the row
    transform_row: Optional[RowTransform] = None
    encoding: str = "utf-8-sig"


@dataclass
class ParseResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    headers: List[str] = field(default_factory=list)
    valid_rows: int = 0
    skipped_rows: int = 0
    errors: List[ImportErrorEntry] = field(default_factory=list)

    @property
    def total_rows(self) -> int:
        return self.valid_rows + len(self.errors)

    @property
    def error_rows(self) -> int:
        return len(self.errors)

    def record_error(self, row_number: int, message: str, raw_data: Any = None) -> None:
        self.errors.append(
            ImportErrorEntry(row=row_number, error=message, raw_data=_make_json_safe(raw_data))
        )


def coerce_value(value: Any) -> Any:
    """
    Apply the shared cell coercion rules to a raw value.

    Empty strings become None, ``-12`` / ``19.99`` style strings become
    int/float, and ``dd-mm-yyyy`` strings become dates when the date exists.
    Everything else is returned unchanged.
    """
    if not isinstance(value, str):
        return value
    if value == "":
        return None

    if _NUMERIC_PATTERN.fullmatch(value):
        return float(value) if "." in value else int(value)

    match = _DAY_MONTH_YEAR_PATTERN.fullmatch(value)
    if match:
        day, month, year = (int(part) for part in match.groups())
        try:
            return date(year, month, day)
        except ValueError:
            return value

    return value


def clean_headers(raw_headers: Sequence[Any]) -> List[str]:
    """Trim header cells, naming blanks ``column_N`` (1-based) and suffixing duplicates."""
    headers: List[str] = []
    seen: Dict[str, int] = {}
    for index, raw in enumerate(raw_headers):
        text = "" if _is_missing(raw) else str(raw).strip()
        name = text or f"column_{index + 1}"
        if name in seen:
            seen[name] += 1
            name = f"{name}_{seen[name]}"
        else:
            seen[name] = 1
        headers.append(name)
    return headers


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, dict, tuple, set)):
        return False
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _is_empty_row(row: Dict[str, Any]) -> bool:
    return all(value is None or value == "" for value in row.values())


def resolve_file_format(mime_type: Optional[str], file_name: Optional[str] = None) -> str:
    """
    Decide how to parse a file from its MIME type, falling back to the extension.

    Raises:
        UnsupportedFileTypeError: If neither identifies a spreadsheet or CSV
    """
    mime = (mime_type or "").split(";")[0].strip().lower()
    extension = os.path.splitext(file_name or "")[1].lower()

    if "csv" in mime:
        return FORMAT_CSV
    if "excel" in mime or "spreadsheet" in mime:
        # Browsers on Windows label .csv uploads as application/vnd.ms-excel
        if extension in CSV_EXTENSIONS:
            return FORMAT_CSV
        return FORMAT_SPREADSHEET
    if mime in _GENERIC_MIME_TYPES:
        if extension in SPREADSHEET_EXTENSIONS:
            return FORMAT_SPREADSHEET
        if extension in CSV_EXTENSIONS:
            return FORMAT_CSV

    raise UnsupportedFileTypeError(mime_type, file_name)


class _RowCollector:
    """Applies empty-row, transform and max-rows handling shared by both formats."""

    def __init__(self, result: ParseResult, options: ParseOptions):
        self.result = result
        self.options = options

    @property
    def is_full(self) -> bool:
        max_rows = self.options.max_rows
        return max_rows is not None and len(self.result.rows) >= max_rows

    def add(self, row: Dict[str, Any], row_number: int, raw_data: Any) -> None:
        if not self.options.include_empty_rows and _is_empty_row(row):
            self.result.skipped_rows += 1
            return

        transformed: Optional[Dict[str, Any]] = row
        if self.options.transform_row is not None:
            try:
                transformed = self.options.transform_row(row, row_number - 1)
                if transformed is not None and not isinstance(transformed, dict):
                    raise RowTransformError(
                        f"transform returned {type(transformed).__name__}, expected a mapping"
                    )
            except Exception as e:
                self.result.record_error(row_number, f"Row transform failed: {e}", raw_data)
                return

        if transformed is None:
            self.result.skipped_rows += 1
            return

        self.result.rows.append(transformed)
        self.result.valid_rows += 1


def parse_csv(file_path: str, options: Optional[ParseOptions] = None,
              delimiter: Optional[str] = None) -> ParseResult:
    """Stream a delimited text file row by row."""
    options = options or ParseOptions()
    result = ParseResult()
    collector = _RowCollector(result, options)
    delimiter = delimiter or detect_file_delimiter(file_path, encoding=options.encoding)

    try:
        handle = open(file_path, "r", encoding=options.encoding, errors="replace", newline="")
    except OSError as e:
        raise FileParseError(f"Failed to parse CSV file: {e}") from e

    with handle:
        reader = csv.reader(handle, delimiter=delimiter)
        try:
            raw_headers = next(reader, None)
        except csv.Error as e:
            raise FileParseError(f"Failed to parse CSV header: {e}") from e

        if raw_headers is None:
            logger.info("CSV file %s is empty", file_path)
            return result

        result.headers = clean_headers(raw_headers)
        header_count = len(result.headers)
        row_number = 0

        while not collector.is_full:
            row_number += 1
            try:
                values = next(reader)
            except StopIteration:
                break
            except csv.Error as e:
                result.record_error(row_number, f"Malformed CSV row: {e}")
                continue

            if len(values) > header_count:
                result.record_error(
                    row_number,
                    f"Row has {len(values)} values but the header defines {header_count} columns",
                    values,
                )
                continue

            try:
                row = {
                    header: coerce_value(values[index]) if index < len(values) else None
                    for index, header in enumerate(result.headers)
                }
            except Exception as e:
                result.record_error(row_number, f"Failed to read row: {e}", values)
                continue

            collector.add(row, row_number, values)

    logger.info(
        "Parsed CSV %s: %d valid rows, %d errors, %d skipped (delimiter %r)",
        os.path.basename(file_path),
        result.valid_rows,
        len(result.errors),
        result.skipped_rows,
        delimiter,
    )
    return result


def _spreadsheet_engine(file_path: str) -> Optional[str]:
    extension = os.path.splitext(file_path)[1].lower()
    if extension in (".xlsx", ".xlsm"):
        return "openpyxl"
    # Let pandas pick for legacy .xls and extension-less temp files
    return None


def _spreadsheet_cell(value: Any) -> Any:
    if _is_missing(value):
        return None
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if isinstance(value, (datetime, date)):
        return value
    if isinstance(value, str):
        return coerce_value(value)
    item = getattr(value, "item", None)
    if callable(item) and not isinstance(value, (int, float, bool)):
        # numpy scalars
        return item()
    return value


def _read_first_sheet(file_path: str) -> pd.DataFrame:
    try:
        return pd.read_excel(
            file_path,
            sheet_name=0,
            header=None,
            dtype=object,
            engine=_spreadsheet_engine(file_path),
        )
    except Exception as e:
        raise FileParseError(f"Failed to parse Excel file: {e}") from e


def parse_excel(file_path: str, options: Optional[ParseOptions] = None) -> ParseResult:
    """Parse the first worksheet, treating its first row as headers."""
    options = options or ParseOptions()
    result = ParseResult()
    collector = _RowCollector(result, options)

    frame = _read_first_sheet(file_path)
    if frame.empty:
        logger.info("Worksheet in %s is empty", file_path)
        return result

    records: Iterable[Sequence[Any]] = frame.itertuples(index=False, name=None)
    iterator = iter(records)
    result.headers = clean_headers(list(next(iterator)))

    for row_number, raw_values in enumerate(iterator, start=1):
        if collector.is_full:
            break
        try:
            row = {
                header: _spreadsheet_cell(raw_values[index]) if index < len(raw_values) else None
                for index, header in enumerate(result.headers)
            }
        except Exception as e:
            result.record_error(row_number, f"Failed to read row: {e}", list(raw_values))
            continue

        collector.add(row, row_number, list(raw_values))

    logger.info(
        "Parsed spreadsheet %s: %d valid rows, %d errors, %d skipped",
        os.path.basename(file_path),
        result.valid_rows,
        len(result.errors),
        result.skipped_rows,
    )
    return result


def parse_file(file_path: str, mime_type: Optional[str], options: Optional[ParseOptions] = None,
               file_name: Optional[str] = None) -> ParseResult:
    """
    Parse an uploaded file according to its MIME type.

    Args:
        file_path: Local path of the file
        mime_type: MIME type reported by the client
        options: Row limits, empty-row handling and the per-row transform
        file_name: Original file name, used for the extension fallback

    Raises:
        UnsupportedFileTypeError: Before opening the file, for unknown formats
        FileParseError: If the file cannot be opened or read as a whole
    """
    file_format = resolve_file_format(mime_type, file_name or file_path)
    if file_format == FORMAT_SPREADSHEET:
        return parse_excel(file_path, options)
    return parse_csv(file_path, options)
