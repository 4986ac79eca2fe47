"""Utility helpers for config values, timestamps and request headers."""

from __future__ import annotations

import math
import os
from datetime import datetime, timezone
from typing import Any, List

from dateutil import parser as date_parser

NOT_AVAILABLE = "na"


def utc_now() -> datetime:
    """Get the current UTC datetime.

    Returns:
        datetime: Timezone-aware current UTC time.
    """
    return datetime.now(timezone.utc)


def resolve_env(obj: Any) -> Any:
    """Recursively resolve environment placeholders in config structures.

    Strings of the form "${VAR}" are replaced by the value of VAR if set.
    Non-string values are traversed recursively.
    """
    if isinstance(obj, str):
        if obj.startswith("${") and obj.endswith("}"):
            key = obj[2:-1]
            return os.getenv(key, obj)
        return obj
    if isinstance(obj, list):
        return [resolve_env(item) for item in obj]
    if isinstance(obj, dict):
        return {k: resolve_env(v) for k, v in obj.items()}
    return obj


def split_csv(value: str) -> List[str]:
    """Split a comma separated list, dropping blanks."""
    return [part.strip() for part in value.split(",") if part.strip()]


def parse_bool(value: str) -> bool:
    """Interpret common truthy strings from the environment."""
    return value.strip().lower() in ("1", "true", "yes", "on")


def format_timestamp(value: str | None) -> str:
    """Render an API timestamp as a stable label value.

    Timestamps are rendered as ``YYYY-MM-DD HH:MM:SS[.fraction] +ZZZZ ZONE``
    with trailing fractional zeros removed, e.g.
    ``2021-03-10 11:21:37.5 +0000 UTC``.

    Args:
        value: ISO8601 timestamp from the API, or None.

    Returns:
        str: Formatted timestamp, or ``"na"`` when value is empty.
    """
    if not value:
        return NOT_AVAILABLE
    parsed = date_parser.isoparse(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    rendered = parsed.strftime("%Y-%m-%d %H:%M:%S")
    if parsed.microsecond:
        rendered += (".%06d" % parsed.microsecond).rstrip("0")
    offset = parsed.strftime("%z")
    zone = "UTC" if parsed.utcoffset().total_seconds() == 0 else offset
    return f"{rendered} {offset} {zone}"


def parse_timeout_seconds(value: str) -> float:
    """Parse a scrape timeout hint in seconds.

    Args:
        value: Raw header value such as "9.5".

    Returns:
        float: Timeout in seconds.

    Raises:
        ValueError: If the value is not a finite, non-negative number.
    """
    seconds = float(value)
    if math.isnan(seconds) or math.isinf(seconds) or seconds < 0:
        raise ValueError(f"invalid timeout '{value}'")
    return seconds
