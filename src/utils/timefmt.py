from __future__ import annotations

import re
from datetime import datetime, timezone

_FRACTION_RE = re.compile(r"\.(\d+)")


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso8601(raw: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp with or without fractional seconds.

    Naive values are treated as UTC. Returns None for empty or invalid input.
    """
    text = (raw or "").strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    # fromisoformat on older interpreters only accepts 3 or 6 fractional digits.
    match = _FRACTION_RE.search(text)
    if match:
        digits = (match.group(1) + "000000")[:6]
        text = text[: match.start()] + "." + digits + text[match.end() :]
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def from_epoch(value: object) -> datetime | None:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def format_iso8601(value: datetime | None) -> str:
    return value.isoformat() if value is not None else ""


def format_stamp(value: datetime) -> str:
    return value.astimezone().strftime("%b %d, %Y %H:%M")
