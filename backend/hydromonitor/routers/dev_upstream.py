"""
Development Upstream Endpoint
=============================
A stand-in for the upstream telemetry API, with API key authentication.

PURPOSE:
    The default development configuration polls this endpoint, so the
    whole fetch -> decode -> store pipeline runs without real devices.
    It lets you verify that:
    - The API key header is sent properly
    - Hex payloads are decoded correctly
    - Readings show up on the dashboard

REAL ENDPOINT:
    https://kedairekagreenhouse.my.id/api/latest-readings/HZ1

THIS ENDPOINT:
    http://localhost:8000/api/test/latest-readings/HZ1

IMPORTANT:
    Only mounted when ENVIRONMENT=development.
    The test API key is hardcoded for local testing only.
"""

import random
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Header, HTTPException

from hydromonitor.services.hex_decoder import CHUNK_SIZE, layout_for


router = APIRouter(prefix="/api/test", tags=["test"])


# =============================================================================
# TEST API KEY
# =============================================================================

# This is the test API key. Change it for your testing.
TEST_API_KEY = "test-sensor-api-key-12345"

# Plausible physical ranges for generated values
VALUE_RANGES = {
    "ph": (5.5, 7.5),
    "tds_level": (300.0, 900.0),
    "ec": (0.8, 2.4),
    "temperature": (20.0, 28.0),
    "moisture": (40.0, 70.0),
    "humidity": (55.0, 85.0),
    "light": (200.0, 12000.0),
}


def verify_api_key(x_api_key: Optional[str] = Header(None)) -> str:
    """
    Verify the X-API-KEY header.

    Raises:
        HTTPException: If auth fails
    """
    if not x_api_key:
        raise HTTPException(status_code=401, detail="Missing X-API-KEY header")

    if x_api_key != TEST_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid API key")

    return x_api_key


def encode_payload(device_code: str, values: dict) -> str:
    """Encode physical values the way the devices do (inverse of decode)."""
    layout = layout_for(device_code)
    chunks = []
    for field, scale in layout:
        raw = max(0, min(0xFFFF, round(values[field] * scale)))
        chunks.append(f"{raw:0{CHUNK_SIZE}X}")
    return "".join(chunks)


# =============================================================================
# TEST UPSTREAM ENDPOINT
# =============================================================================

@router.get(
    "/latest-readings/{device_code}",
    summary="Test Latest Reading",
    description="""
    Returns a freshly generated hex envelope for a device.

    **Authentication:**
    Include the header: `X-API-KEY: test-sensor-api-key-12345`
    """
)
async def latest_reading(device_code: str, x_api_key: Optional[str] = Header(None)):
    """Generate one reading for the device family and wrap it like upstream does."""
    verify_api_key(x_api_key)

    layout = layout_for(device_code)
    if layout is None:
        raise HTTPException(status_code=404, detail=f"Unknown device family: {device_code}")

    values = {field: random.uniform(*VALUE_RANGES[field]) for field, _ in layout}
    now = datetime.now(timezone.utc)

    return {
        "id": f"test_{int(now.timestamp() * 1000)}",
        "device_code": device_code,
        "reading": {
            "encoded_data": encode_payload(device_code, values),
            "timestamp": now.isoformat(),
        },
    }
