"""
Time-to-live policy for temporary databases. Pure functions, no I/O.
Accepted text form: whole minutes ("30m") or hours ("1h"), case-insensitive.
"""
import math
import re

MIN_TTL_MS = 30 * 60 * 1000
MAX_TTL_MS = 24 * 60 * 60 * 1000

_TTL_PATTERN = re.compile(r"^(\d+)([mh])$", re.IGNORECASE)
_UNIT_MS = {"m": 60 * 1000, "h": 60 * 60 * 1000}


def is_ttl_ms_in_range(value: int) -> bool:
    return MIN_TTL_MS <= value <= MAX_TTL_MS


def parse_ttl(value: str | None) -> int | None:
    """
    Parse "30m" / "1h" / "24h" into milliseconds.
    Returns None for anything malformed or outside [MIN_TTL_MS, MAX_TTL_MS].
    """
    if not isinstance(value, str):
        return None
    match = _TTL_PATTERN.match(value.strip())
    if not match:
        return None
    amount, unit = match.groups()
    ms = int(amount) * _UNIT_MS[unit.lower()]
    if not is_ttl_ms_in_range(ms):
        return None
    return ms


def parse_ttl_ms_input(value: object) -> int | None:
    """Numeric ttlMs from a JSON body, floored. Non-numbers and non-finite values give None."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return math.floor(value)


def clamp_ttl_ms(value: int | float | None) -> int:
    """Always a valid TTL: missing or non-finite -> MAX_TTL_MS, otherwise clamped into range."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return MAX_TTL_MS
    return int(max(MIN_TTL_MS, min(MAX_TTL_MS, math.floor(value))))
