from datetime import date, datetime

from tabular_ingest.domain.imports.schema_inference import classify_value, infer_field_types


def test_classify_native_values():
    assert classify_value(3) == "number"
    assert classify_value(2.5) == "number"
    assert classify_value(True) == "boolean"
    assert classify_value(date(2024, 1, 1)) == "date"
    assert classify_value(datetime(2024, 1, 1, 12, 0)) == "date"
    assert classify_value([1, 2]) == "array"
    assert classify_value({"a": 1}) == "object"
    assert classify_value(None) is None


def test_classify_strings_by_content():
    assert classify_value("42") == "number"
    assert classify_value("TRUE") == "boolean"
    assert classify_value("2024-05-01") == "date"
    assert classify_value("2024-05-01T10:30:00Z") == "date"
    assert classify_value("15-03-1990") == "date"
    assert classify_value("32-13-1990") == "string"
    assert classify_value("hello") == "string"


def test_majority_type_wins():
    rows = [{"v": 1}, {"v": 2}, {"v": "n/a"}]

    assert infer_field_types(rows, ["v"]) == {"v": "number"}


def test_number_wins_a_tie_with_string():
    rows = [{"v": 1}, {"v": "n/a"}]

    assert infer_field_types(rows, ["v"]) == {"v": "number"}


def test_fields_without_values_default_to_string():
    rows = [{"a": None}, {"a": None}]

    assert infer_field_types(rows, ["a", "missing"]) == {"a": "string", "missing": "string"}


def test_system_fields_are_ignored():
    rows = [{"name": "x", "_row_number": 1}]

    assert infer_field_types(rows, ["name", "_row_number"]) == {"name": "string"}


def test_sample_size_limits_inspected_rows():
    rows = [{"v": "text"}] + [{"v": 1}] * 5

    assert infer_field_types(rows, ["v"], sample_size=1) == {"v": "string"}
    assert infer_field_types(rows, ["v"]) == {"v": "number"}


def test_inference_does_not_modify_rows():
    rows = [{"v": "42"}]

    infer_field_types(rows, ["v"])

    assert rows == [{"v": "42"}]


def test_user_columns_with_leading_underscore_are_typed():
    rows = [{"_notes": "hello", "_row_number": 1, "_import_id": "abc"}]

    assert infer_field_types(rows, ["_notes", "_row_number", "_import_id"]) == {"_notes": "string"}
