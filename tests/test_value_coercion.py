from datetime import date

import pytest

from tabular_ingest.core.errors import UnsupportedFileTypeError
from tabular_ingest.domain.imports.processors.file_parser import (
    FORMAT_CSV,
    FORMAT_SPREADSHEET,
    clean_headers,
    coerce_value,
    resolve_file_format,
)


def test_valid_day_month_year_becomes_date():
    assert coerce_value("15-03-1990") == date(1990, 3, 15)


def test_invalid_calendar_date_stays_string():
    assert coerce_value("32-13-1990") == "32-13-1990"
    assert coerce_value("29-02-2023") == "29-02-2023"


def test_leap_day_is_accepted():
    assert coerce_value("29-02-2024") == date(2024, 2, 29)


def test_numeric_strings_become_numbers():
    assert coerce_value("19.99") == 19.99
    assert coerce_value("-42") == -42
    assert isinstance(coerce_value("42"), int)
    assert isinstance(coerce_value("42.0"), float)


def test_non_numeric_strings_are_kept():
    assert coerce_value("19.99.99") == "19.99.99"
    assert coerce_value("1e5") == "1e5"
    assert coerce_value("+5") == "+5"
    assert coerce_value(" 5") == " 5"


def test_empty_string_becomes_none():
    assert coerce_value("") is None


def test_non_strings_pass_through():
    assert coerce_value(7) == 7
    assert coerce_value(None) is None
    assert coerce_value(True) is True


def test_clean_headers_trims_and_synthesizes_names():
    assert clean_headers([" Name ", "", None, "Age"]) == ["Name", "column_2", "column_3", "Age"]


def test_clean_headers_suffixes_duplicates():
    assert clean_headers(["id", "id", "id"]) == ["id", "id_2", "id_3"]


@pytest.mark.parametrize(
    "mime_type, file_name, expected",
    [
        ("text/csv", "data.csv", FORMAT_CSV),
        ("application/vnd.openxmlformats-officedocument.spreadsheetml.sheet", "data.xlsx", FORMAT_SPREADSHEET),
        ("application/vnd.ms-excel", "legacy.xls", FORMAT_SPREADSHEET),
        ("application/vnd.ms-excel", "export.csv", FORMAT_CSV),
        ("application/octet-stream", "report.xlsm", FORMAT_SPREADSHEET),
        ("application/octet-stream", "report.csv", FORMAT_CSV),
        (None, "report.csv", FORMAT_CSV),
    ],
)
def test_resolve_file_format(mime_type, file_name, expected):
    assert resolve_file_format(mime_type, file_name) == expected


def test_resolve_file_format_rejects_other_types():
    with pytest.raises(UnsupportedFileTypeError):
        resolve_file_format("application/pdf", "report.pdf")

    with pytest.raises(UnsupportedFileTypeError):
        resolve_file_format("application/octet-stream", "archive.zip")
