"""
Hex Payload Decoder
===================

Turns the compact hex payload sent by the field devices into physical units.

HOW THE PAYLOAD WORKS:
---------------------
Every field is one 4-character hex chunk (an unsigned 16-bit integer).
The device family (first two letters of the device code) decides which
fields are present, in what order, and how much each raw value is scaled.

    HZ1 + "02BC07D000F0"
           |   |   |
           |   |   +-- 0x00F0 = 240  / 10  -> temperature 24.0 °C
           |   +------ 0x07D0 = 2000 / 10  -> tds_level 200.0 ppm
           +---------- 0x02BC = 700  / 100 -> ph 7.0

FAMILIES:
--------
    CZ  (chili, 4 sensors)      ph, moisture, ec, temperature
    MZ  (melon, 3 sensors)      ph, ec, temperature
    SZ  (lettuce, 3 sensors)    ph, ec, temperature
    GZ  (greenhouse, 3 sensors) temperature, humidity, light
    HZ  (hydroponic, 3 sensors) ph, tds_level, temperature

Anything we can't decode comes back as None. That means "no usable
reading", never an error.
"""

import logging
from typing import Optional

from hydromonitor.models import DecodedReading
from hydromonitor.utils.validation import is_hex_payload

logger = logging.getLogger(__name__)


# Width of one field in hex characters (16 bits)
CHUNK_SIZE = 4

# Scale factors: raw integer / scale = physical value
PH_SCALE = 100
EC_SCALE = 100
TENTHS_SCALE = 10
LIGHT_SCALE = 1

_PH_EC_TEMPERATURE = (
    ("ph", PH_SCALE),
    ("ec", EC_SCALE),
    ("temperature", TENTHS_SCALE),
)

# family prefix -> ordered (field, scale) pairs
FIELD_LAYOUTS: dict[str, tuple[tuple[str, int], ...]] = {
    "CZ": (
        ("ph", PH_SCALE),
        ("moisture", TENTHS_SCALE),
        ("ec", EC_SCALE),
        ("temperature", TENTHS_SCALE),
    ),
    "MZ": _PH_EC_TEMPERATURE,
    "SZ": _PH_EC_TEMPERATURE,
    "GZ": (
        ("temperature", TENTHS_SCALE),
        ("humidity", TENTHS_SCALE),
        ("light", LIGHT_SCALE),
    ),
    "HZ": (
        ("ph", PH_SCALE),
        ("tds_level", TENTHS_SCALE),
        ("temperature", TENTHS_SCALE),
    ),
}


def layout_for(device_code) -> Optional[tuple[tuple[str, int], ...]]:
    """Return the field layout for a device code, or None if unknown."""
    if not isinstance(device_code, str) or len(device_code) < 2:
        return None
    return FIELD_LAYOUTS.get(device_code[:2].upper())


def decode(encoded, device_code) -> Optional[DecodedReading]:
    """
    Decode a hex payload for a device.

    Args:
        encoded: Hex string, exactly 4 characters per field of the family
        device_code: Device identifier, e.g. "HZ1" or "CZ-04"

    Returns:
        A DecodedReading with the family's fields set, or None if the
        family is unknown or the payload is malformed.
    """
    layout = layout_for(device_code)
    if layout is None:
        logger.warning(f"Unknown device code: {device_code!r}, cannot decode hex data")
        return None

    if not is_hex_payload(encoded):
        logger.warning(f"[{device_code}] Payload is not a hex string: {encoded!r}")
        return None

    expected_length = len(layout) * CHUNK_SIZE
    if len(encoded) != expected_length:
        logger.warning(
            f"[{device_code}] Payload has {len(encoded)} hex chars, expected {expected_length}"
        )
        return None

    values = {}
    for index, (field, scale) in enumerate(layout):
        chunk = encoded[index * CHUNK_SIZE:(index + 1) * CHUNK_SIZE]
        values[field] = int(chunk, 16) / scale

    logger.debug(f"[{device_code}] Decoded {encoded} -> {values}")
    return DecodedReading(**values)
