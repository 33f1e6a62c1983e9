"""
Input Validation Utilities
===========================

Small parsing and validation helpers shared by the fetcher, the decoder
and the export endpoint.
"""

import re
import string
from datetime import datetime, timezone
from typing import Optional


HEX_DIGITS = frozenset(string.hexdigits)

# Epoch values above this are milliseconds, not seconds
EPOCH_MILLIS_THRESHOLD = 1e11

# oneM2M creation time, e.g. "20240105T223650"
ONEM2M_TIME_FORMAT = "%Y%m%dT%H%M%S"


def is_hex_payload(value) -> bool:
    """
    Check that a value is a non-empty string of hex digits.

    Args:
        value: Candidate payload (e.g., "02BC07D000F0")

    Returns:
        True if every character is a hex digit, False otherwise
    """
    if not isinstance(value, str) or not value:
        return False
    return all(c in HEX_DIGITS for c in value)


def parse_timestamp(value) -> Optional[datetime]:
    """
    Parse a timestamp from an upstream payload.

    Accepts:
        - datetime objects
        - epoch numbers (seconds or milliseconds)
        - ISO-8601 strings ("2026-01-05T22:26:50Z")
        - oneM2M creation times ("20260105T222650")

    Returns:
        A UTC datetime, or None if the value can't be parsed
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if value > EPOCH_MILLIS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00").replace("z", "+00:00"))
        except ValueError:
            try:
                parsed = datetime.strptime(text, ONEM2M_TIME_FORMAT)
            except ValueError:
                return None
    else:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def sanitize_filename(name: str) -> str:
    """
    Sanitize a filename by removing dangerous characters.

    Args:
        name: Original filename

    Returns:
        Sanitized filename safe for a Content-Disposition header
    """
    # Remove or replace dangerous characters
    sanitized = re.sub(r'[<>:"/\\|?*\s]', '_', name)
    # Remove leading/trailing dots and spaces
    sanitized = sanitized.strip('. ')
    # Limit length
    return sanitized[:255]
