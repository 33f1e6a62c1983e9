"""
Utility modules for the HydroMonitor backend.
"""

from hydromonitor.utils.validation import (
    is_hex_payload,
    parse_timestamp,
    sanitize_filename,
)

__all__ = [
    "is_hex_payload",
    "parse_timestamp",
    "sanitize_filename",
]
