"""Duration parsing and formatting shared by CLI, config and ingress."""

import re

_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_COMPONENT = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(text: str) -> float:
    """Parse a duration string such as ``"5s"``, ``"1m30s"`` or ``"250ms"``.

    Accepts the same syntax remote monitors send in ``upload_timeout``: one or
    more number+unit components, optionally signed. A bare ``"0"`` is zero.

    Returns:
        Duration in seconds.

    Raises:
        ValueError: If the string is empty or malformed.
    """
    s = text.strip()
    if not s:
        raise ValueError("empty duration")

    sign = 1.0
    if s[0] in "+-":
        sign = -1.0 if s[0] == "-" else 1.0
        s = s[1:]

    if s == "0":
        return 0.0

    total = 0.0
    pos = 0
    while pos < len(s):
        match = _COMPONENT.match(s, pos)
        if match is None:
            raise ValueError(f"invalid duration: {text!r}")
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()

    if pos == 0:
        raise ValueError(f"invalid duration: {text!r}")
    return sign * total


def format_seconds(seconds: float) -> str:
    """Format a duration for log and table output (compact)."""
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(seconds, 60)
    return f"{int(minutes)}m{secs:.0f}s"


def format_pct(value: float) -> str:
    """Format a CPU percentage for table output."""
    return f"{value:6.2f}%"
