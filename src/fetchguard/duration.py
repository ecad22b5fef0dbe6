"""Duration parsing utilities."""

import re
from datetime import timedelta

from fetchguard.types import Duration

_PART_PATTERN = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_UNITS: dict[str, int] = {
    "ms": 1,
    "s": 1000,
    "m": 60_000,
    "h": 3_600_000,
    "d": 86_400_000,
}


def parse_duration(duration: Duration | timedelta) -> float:
    """Parse a duration to milliseconds.

    Accepts ``"250ms"``, ``"1.5s"``, compound forms like ``"1m30s"``,
    a ``timedelta``, or a bare number already in milliseconds.
    """
    if isinstance(duration, bool):
        raise ValueError(f"Invalid duration: {duration!r}")
    if isinstance(duration, timedelta):
        return duration.total_seconds() * 1000
    if isinstance(duration, (int, float)):
        if duration < 0:
            raise ValueError(f"Invalid duration: {duration!r}")
        return duration

    text = duration.strip()
    pos = 0
    total = 0.0
    for match in _PART_PATTERN.finditer(text):
        if match.start() != pos:
            break
        value, unit = match.groups()
        total += float(value) * _UNITS[unit]
        pos = match.end()
    if not text or pos != len(text):
        raise ValueError(f"Invalid duration: {duration!r}")
    return total
