"""Parsing of human-readable durations such as ``"30s"`` or ``"2h"``."""

from __future__ import annotations

import re
from datetime import timedelta
from typing import Union

Duration = Union[str, int, float, timedelta]

_UNITS = {
    "ms": 0.001,
    "s": 1,
    "sec": 1,
    "m": 60,
    "min": 60,
    "h": 3600,
    "hr": 3600,
    "d": 86400,
}

_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-z]*)\s*$", re.IGNORECASE)


def parse_duration(value: Duration) -> float:
    """Return ``value`` as a number of seconds.

    Strings carry a unit suffix (``ms``, ``s``, ``m``, ``h``, ``d``); a bare
    number in a string or a numeric value is read as seconds.

    Raises:
        ValueError: If the value is negative or the unit is unknown.
    """
    if isinstance(value, timedelta):
        seconds = value.total_seconds()
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
    elif isinstance(value, str):
        match = _PATTERN.match(value)
        if not match:
            raise ValueError(f"Invalid duration: {value!r}")
        amount, unit = match.groups()
        unit = unit.lower() or "s"
        if unit not in _UNITS:
            raise ValueError(f"Unknown duration unit {unit!r} in {value!r}")
        seconds = float(amount) * _UNITS[unit]
    else:
        raise ValueError(f"Invalid duration: {value!r}")

    if seconds < 0:
        raise ValueError(f"Duration must not be negative: {value!r}")
    return seconds
