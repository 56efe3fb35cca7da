"""
Advisory per-field type inference for parsed rows.

The inferred types are stored on the import metadata for documentation and
UI hints only; row values are persisted exactly as the parser produced them.
"""
import logging
import re
from collections import Counter
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from tabular_ingest.domain.imports.models import SYSTEM_FIELDS

logger = logging.getLogger(__name__)

TYPE_NUMBER = "number"
TYPE_BOOLEAN = "boolean"
TYPE_DATE = "date"
TYPE_ARRAY = "array"
TYPE_OBJECT = "object"
TYPE_STRING = "string"

# Earlier entries win count ties
TYPE_PRIORITY = (TYPE_NUMBER, TYPE_BOOLEAN, TYPE_DATE, TYPE_ARRAY, TYPE_OBJECT, TYPE_STRING)

_NUMERIC_STRING = re.compile(r"^-?\d+(\.\d+)?$")
_DAY_MONTH_YEAR = re.compile(r"^\d{2}-\d{2}-\d{4}$")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}([T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?)?$")


def _looks_like_date(text: str) -> bool:
    if _DAY_MONTH_YEAR.match(text):
        day, month, year = (int(part) for part in text.split("-"))
        try:
            date(year, month, day)
        except ValueError:
            return False
        return True
    if _ISO_DATE.match(text):
        try:
            datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return False
        return True
    return False


def classify_value(value: Any) -> Optional[str]:
    """Return the type name for a single value, or None for nulls."""
    if value is None:
        return None
    if isinstance(value, bool):
        return TYPE_BOOLEAN
    if isinstance(value, (int, float)):
        return TYPE_NUMBER
    if isinstance(value, (date, datetime)):
        return TYPE_DATE
    if isinstance(value, (list, tuple, set)):
        return TYPE_ARRAY
    if isinstance(value, Mapping):
        return TYPE_OBJECT

    text = str(value).strip()
    if not text:
        return None
    if _NUMERIC_STRING.match(text):
        return TYPE_NUMBER
    if text.lower() in ("true", "false"):
        return TYPE_BOOLEAN
    if _looks_like_date(text):
        return TYPE_DATE
    return TYPE_STRING


def _pick_type(tally: Counter) -> str:
    if not tally:
        return TYPE_STRING
    best_count = max(tally.values())
    for candidate in TYPE_PRIORITY:
        if tally.get(candidate) == best_count:
            return candidate
    return TYPE_STRING


def infer_field_types(
    rows: Sequence[Mapping[str, Any]],
    headers: Iterable[str],
    sample_size: Optional[int] = None,
) -> Dict[str, str]:
    """
    Infer one type per header by majority vote over the non-null values.

    Args:
        rows: Parsed rows
        headers: Fields to classify; the stamped system fields are skipped
        sample_size: Only inspect the first N rows when set to a positive number

    Returns:
        Mapping of field name to one of number, boolean, date, array, object, string
    """
    sample = rows[:sample_size] if sample_size and sample_size > 0 else rows
    fields: List[str] = [name for name in headers if name not in SYSTEM_FIELDS]
    tallies: Dict[str, Counter] = {name: Counter() for name in fields}

    for row in sample:
        for name in fields:
            kind = classify_value(row.get(name))
            if kind is not None:
                tallies[name][kind] += 1

    field_types = {name: _pick_type(tallies[name]) for name in fields}
    logger.debug("Inferred field types from %d rows: %s", len(sample), field_types)
    return field_types
