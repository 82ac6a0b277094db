"""Coerce values to the type registered for their column."""

from typing import Any
from typing import Optional

from identity_sync.clock import to_iso
from identity_sync.enums import DataType
from identity_sync.schema.inference import as_number
from identity_sync.schema.inference import is_empty
from identity_sync.schema.inference import parse_date

TRUE_STRINGS = frozenset({"true", "1", "yes", "y", "on"})
FALSE_STRINGS = frozenset({"false", "0", "no", "n", "off"})


def coerce_value(value: Any, data_type: DataType, max_length: Optional[int] = None) -> Any:
    """
    Convert a value to its storage form for ``data_type``.

    Text is truncated to ``max_length``; datetimes become ISO-8601 strings.

    Raises:
        ValueError: if the value cannot represent the type
    """
    if is_empty(value):
        return None

    if data_type == DataType.TEXT:
        if isinstance(value, bool):
            text = "true" if value else "false"
        elif hasattr(value, "isoformat"):
            text = value.isoformat()
        else:
            text = str(value)
        return text[:max_length] if max_length else text

    if data_type == DataType.INTEGER:
        number = as_number(value)
        if number is None or (isinstance(number, float) and not number.is_integer()):
            raise ValueError(f"not an integer: {value!r}")
        return int(number)

    if data_type == DataType.REAL:
        number = as_number(value)
        if number is None:
            raise ValueError(f"not a number: {value!r}")
        return float(number)

    if data_type == DataType.BOOLEAN:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in TRUE_STRINGS:
            return True
        if text in FALSE_STRINGS:
            return False
        raise ValueError(f"not a boolean: {value!r}")

    if data_type == DataType.DATETIME:
        parsed = parse_date(value)
        if parsed is None:
            raise ValueError(f"not a date: {value!r}")
        return to_iso(parsed)

    raise ValueError(f"unknown data type: {data_type}")
