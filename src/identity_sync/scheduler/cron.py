"""
Minimal cron helpers.

``compute_next_run`` only understands fixed daily ``minute hour * * *`` expressions (and
hourly ones with a wildcard hour). Anything richer is approximated and only used for
display; the trigger backend is what actually fires schedules.
"""

import re
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Optional
from zoneinfo import ZoneInfo

CRON_FIELD_PATTERN = re.compile(r"^[0-9A-Za-z\*\-/,]+$")
FIELD_RANGES = ((0, 59), (0, 23), (1, 31), (1, 12), (0, 7))


def validate_cron(cron_expression: str) -> bool:
    """Validate a standard 5-field crontab expression."""
    parts = cron_expression.split()
    if len(parts) != 5:
        return False

    for part, (low, high) in zip(parts, FIELD_RANGES):
        if not CRON_FIELD_PATTERN.match(part):
            return False
        # Plain numbers must be within range; lists, steps and names are left to the trigger backend
        if part.isdigit() and not low <= int(part) <= high:
            return False

    return True


def _leading_number(field: str, default: int) -> int:
    match = re.match(r"\d+", field)
    return int(match.group()) if match else default


def compute_next_run(cron_expression: str, tz_name: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Compute the next occurrence of a daily cron expression.

    Parameters
    ----------
    cron_expression : str
        5-field cron expression, e.g. "0 6 * * *"
    tz_name : str
        IANA timezone the expression is evaluated in
    now : datetime, optional
        Reference time (aware); defaults to the current UTC time

    Returns
    -------
    datetime or None
        Next run in UTC, or None if the expression cannot be read at all
    """
    parts = cron_expression.split()
    if len(parts) != 5:
        return None

    minute_field, hour_field = parts[0], parts[1]
    now = now or datetime.now(timezone.utc)
    local_now = now.astimezone(ZoneInfo(tz_name))
    minute = min(_leading_number(minute_field, 0), 59)

    if hour_field == "*":
        candidate = local_now.replace(minute=minute, second=0, microsecond=0)
        if candidate <= local_now:
            candidate += timedelta(hours=1)
    else:
        hour = min(_leading_number(hour_field, 0), 23)
        candidate = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= local_now:
            candidate += timedelta(days=1)

    return candidate.astimezone(timezone.utc)
