import math
from typing import Any
from decimal import Decimal
from datetime import datetime, date, time
from enum import Enum


def _make_json_safe(value: Any) -> Any:
    """
    Convert Python objects into JSON-serialisable structures, preserving
    as much fidelity as possible.
    """
    if isinstance(value, dict):
        return {str(key): _make_json_safe(val) for key, val in value.items()}
    if isinstance(value, list):
        return [_make_json_safe(item) for item in value]
    if isinstance(value, tuple):
        return [_make_json_safe(item) for item in value]
    if isinstance(value, set):
        return [_make_json_safe(item) for item in value]
    if isinstance(value, Enum):
        return _make_json_safe(value.value)
    if isinstance(value, Decimal):
        # Keep integers as ints, otherwise convert to string to avoid precision loss
        if value == value.to_integral():
            return int(value)
        return str(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode(errors="ignore")
    if isinstance(value, float):
        # NaN and infinities are not valid JSON
        return value if math.isfinite(value) else None
    if isinstance(value, (int, str, bool)) or value is None:
        return value
    # numpy scalars expose the equivalent Python value through item()
    item = getattr(value, "item", None)
    if callable(item):
        try:
            return _make_json_safe(item())
        except (TypeError, ValueError):
            pass
    # Fallback to string representation for unsupported types
    return str(value)
