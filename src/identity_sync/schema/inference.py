"""
Type inference for unseen fields.

Values are classified by majority vote over the non-empty values observed in one batch;
well-known field names then override the vote.
"""

import math
from datetime import date
from datetime import datetime
from typing import Any
from typing import Iterable
from typing import Optional
from typing import Tuple
from typing import Union

from identity_sync.enums import DataType

VOTE_THRESHOLD = 0.8
TEXT_MIN_LENGTH = 50
TEXT_MAX_LENGTH = 1000
TEXT_LENGTH_HEADROOM = 1.2

BOOLEAN_STRINGS = frozenset({"true", "false"})
DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%d.%m.%Y")

# Applied in order; later rules win. max_length None means "keep at least 100".
NAME_HEURISTICS = (
    (("email", "mail"), 255),
    (("phone", "tel"), 50),
    (("name", "title"), None),
    (("url", "link"), 500),
)
NAME_MIN_LENGTH = 100


def is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def is_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return True
    return isinstance(value, str) and value.strip().lower() in BOOLEAN_STRINGS


def as_number(value: Any) -> Optional[Union[int, float]]:
    """Return the numeric value of ints, floats and numeric strings; None otherwise."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            number = int(text)
        except ValueError:
            try:
                number = float(text)
            except ValueError:
                return None
    else:
        return None

    if isinstance(number, float) and not math.isfinite(number):
        return None
    return number


def has_fraction(value: Any) -> bool:
    number = as_number(value)
    return isinstance(number, float) and not number.is_integer()


def parse_date(value: Any) -> Optional[datetime]:
    """Parse ISO-8601, YYYY-MM-DD, MM/DD/YYYY or DD.MM.YYYY; a regex match alone is not enough."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if not isinstance(value, str):
        return None

    text = value.strip()
    # Bare digits parse as ISO basic dates, but they are numbers here
    if not text or text.isdigit():
        return None

    iso_text = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        return datetime.fromisoformat(iso_text)
    except ValueError:
        pass

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def is_date(value: Any) -> bool:
    return parse_date(value) is not None


def text_length(observed_max: int) -> int:
    return min(max(math.ceil(observed_max * TEXT_LENGTH_HEADROOM), TEXT_MIN_LENGTH), TEXT_MAX_LENGTH)


def apply_name_heuristics(
    field_name: str, data_type: DataType, max_length: Optional[int]
) -> Tuple[DataType, Optional[int]]:
    """Override the vote for semantically well-known field names."""
    name = field_name.lower()
    for needles, forced_length in NAME_HEURISTICS:
        if not any(needle in name for needle in needles):
            continue
        data_type = DataType.TEXT
        max_length = forced_length if forced_length is not None else max(max_length or 0, NAME_MIN_LENGTH)
    return data_type, max_length


def infer_field_type(field_name: str, values: Iterable[Any]) -> Optional[Tuple[DataType, Optional[int]]]:
    """
    Infer the storage type of a field from the values seen in one batch.

    Args:
        field_name: Field name, used for the name heuristics
        values: All values observed for the field (empty ones are ignored)

    Returns:
        (data_type, max_length) where max_length is only set for text,
        or None when the batch holds no non-empty value for the field
    """
    observed = [value for value in values if not is_empty(value)]
    if not observed:
        return None

    total = len(observed)
    max_length: Optional[int] = None

    if sum(is_boolean(v) for v in observed) / total >= VOTE_THRESHOLD:
        data_type = DataType.BOOLEAN
    elif sum(as_number(v) is not None for v in observed) / total >= VOTE_THRESHOLD:
        data_type = DataType.REAL if any(has_fraction(v) for v in observed) else DataType.INTEGER
    elif sum(is_date(v) for v in observed) / total >= VOTE_THRESHOLD:
        data_type = DataType.DATETIME
    else:
        data_type = DataType.TEXT
        max_length = text_length(max(len(str(v)) for v in observed))

    data_type, max_length = apply_name_heuristics(field_name, data_type, max_length)
    if data_type != DataType.TEXT:
        max_length = None
    return data_type, max_length
