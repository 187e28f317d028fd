"""
Local --ttl check so bad input fails before any request is made.
The service applies the same window and stays the authority on it.
"""
import re

MIN_TTL_MINUTES = 30
MAX_TTL_MINUTES = 24 * 60

_TTL = re.compile(r"^(\d+)([mh])$", re.IGNORECASE)


def parse_ttl(value: str) -> int | None:
    """Parse "45m" or "2h" into milliseconds. None when malformed or outside 30m..24h."""
    match = _TTL.match(value.strip())
    if match is None:
        return None
    minutes = int(match.group(1)) * (60 if match.group(2).lower() == "h" else 1)
    if not MIN_TTL_MINUTES <= minutes <= MAX_TTL_MINUTES:
        return None
    return minutes * 60 * 1000
