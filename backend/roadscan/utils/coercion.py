"""
Boundary coercion helpers.

Raw detection payloads carry numbers as strings, nulls, NaNs and assorted
timestamp formats. Every input boundary in the pipeline goes through these
functions so the algorithms only ever see ``float``/``int`` or ``None``.
"""

import math
import re
from datetime import datetime, timezone
from typing import Any, Mapping, NamedTuple, Optional

# Property names checked (in order) when looking for a frame identifier
FRAME_ID_FIELDS = ("frame_id", "frame_number", "frameId", "frameNumber", "frame", "frame_index")

# fromisoformat before 3.11 only takes 3 or 6 fractional digits
FRACTIONAL_SECONDS_PATTERN = re.compile(r"(\d{2}:\d{2}:\d{2})\.(\d+)")


class FrameIdentifier(NamedTuple):
    key: str
    numeric: Optional[float]


def coerce_number(value: Any) -> Optional[float]:
    """Convert ``value`` to a float, or ``None`` when it is missing or NaN."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None if math.isnan(value) else float(value)
    if isinstance(value, str):
        try:
            numeric = float(value.strip())
        except ValueError:
            return None
        return None if math.isnan(numeric) else numeric
    return None


def coerce_finite_number(value: Any) -> Optional[float]:
    """Like :func:`coerce_number` but also rejects +/- infinity."""
    numeric = coerce_number(value)
    if numeric is None or not math.isfinite(numeric):
        return None
    return numeric


def coerce_int(value: Any) -> Optional[int]:
    numeric = coerce_finite_number(value)
    return int(numeric) if numeric is not None else None


def _parse_datetime_string(value: str) -> Optional[datetime]:
    text = value.strip()
    if not text:
        return None
    if text[-1] in "Zz":
        text = text[:-1] + "+00:00"
    text = FRACTIONAL_SECONDS_PATTERN.sub(lambda m: f"{m.group(1)}.{m.group(2)[:6].ljust(6, '0')}", text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def coerce_timestamp(value: Any) -> Optional[float]:
    """
    Convert a timestamp-ish value to epoch milliseconds.

    Order of attempts: datetime instance, finite number (taken as-is),
    numeric string, ISO-8601 date string. Anything else yields ``None``.
    Naive datetimes and date strings without an offset are read as UTC.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp() * 1000.0
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        numeric = coerce_number(value)
        if numeric is not None:
            return numeric
        parsed = _parse_datetime_string(value)
        if parsed is not None:
            return parsed.timestamp() * 1000.0
    return None


def derive_frame_identifier(properties: Optional[Mapping[str, Any]]) -> Optional[FrameIdentifier]:
    """Return the first usable frame identifier found in ``properties``."""
    if not properties or not isinstance(properties, Mapping):
        return None
    for field in FRAME_ID_FIELDS:
        candidate = properties.get(field)
        if candidate is None or isinstance(candidate, bool):
            continue
        if isinstance(candidate, str):
            trimmed = candidate.strip()
            if not trimmed:
                continue
            return FrameIdentifier(trimmed, coerce_finite_number(trimmed))
        if isinstance(candidate, (int, float)) and math.isfinite(candidate):
            key = str(int(candidate)) if float(candidate).is_integer() else str(candidate)
            return FrameIdentifier(key, float(candidate))
    return None
