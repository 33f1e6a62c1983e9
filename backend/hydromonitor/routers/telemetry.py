"""
Telemetry API Router
====================

All the endpoints the dashboard talks to.

HOW IT WORKS:
------------
1. Dashboard sends an HTTP request
2. FastAPI routes it to the right function here
3. We call the StorageManager to do the work
4. We send back JSON (camelCase field names)

Read endpoints never fail because the database is down - the manager
answers from memory instead. The only client errors are bad input.

ALL ENDPOINTS:
-------------
GET    /api/sensor-readings?limit=N   - Newest readings first
POST   /api/sensor-readings           - Record a reading by hand
GET    /api/sensor-readings/latest    - Newest reading (or null)
GET    /api/system-status             - Connection status, data points, ...
GET    /api/alert-settings            - Alert toggles
PUT    /api/alert-settings            - Change alert toggles
POST   /api/sync-antares              - Fetch from upstream right now
GET    /api/export-data               - JSON or CSV export of a time range
"""

import csv
import io
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from hydromonitor.models import (
    AlertSettings,
    AlertSettingsUpdate,
    InsertSensorReading,
    SensorReading,
    SyncResult,
    SystemStatus,
    ensure_utc,
)
from hydromonitor.utils.validation import sanitize_filename


router = APIRouter(prefix="/api", tags=["telemetry"])

EXPORT_FORMATS = ("json", "csv")

# Export window when the caller doesn't give one
DEFAULT_EXPORT_WINDOW = timedelta(hours=24)


# =============================================================================
# DEPENDENCY INJECTION
# =============================================================================

_storage_manager = None  # This gets set when the app starts


def set_storage_manager(manager):
    """Called when the app starts to give us the storage manager."""
    global _storage_manager
    _storage_manager = manager


def get_storage_manager():
    """
    Get the storage manager for use in endpoints.

    Every endpoint function that needs the manager uses this.
    """
    if _storage_manager is None:
        raise HTTPException(status_code=500, detail="Server not fully started yet")
    return _storage_manager


# =============================================================================
# SENSOR READINGS
# =============================================================================

@router.get("/sensor-readings", response_model=list[SensorReading])
async def get_sensor_readings(
    limit: int = Query(50, ge=1, le=1000, description="How many readings to return"),
    manager = Depends(get_storage_manager)
):
    """
    Get the most recent readings, newest first.

    If the last upstream fetch is more than 10 seconds old, this also
    pulls a fresh reading first.
    """
    return await manager.get_sensor_readings(limit=limit)


@router.post("/sensor-readings", response_model=SensorReading)
async def create_sensor_reading(
    request: InsertSensorReading,
    manager = Depends(get_storage_manager)
):
    """
    Record a reading by hand.

    Send us temperature (-50..100 °C), ph (0..14) and tdsLevel (0..2000 ppm).
    Out-of-range values are rejected with a 422.
    """
    return await manager.create_sensor_reading(request)


@router.get("/sensor-readings/latest", response_model=Optional[SensorReading])
async def get_latest_reading(manager = Depends(get_storage_manager)):
    """Get the newest reading, or null if there is none."""
    return await manager.get_latest_reading()


# =============================================================================
# STATUS & SETTINGS
# =============================================================================

@router.get("/system-status", response_model=SystemStatus)
async def get_system_status(manager = Depends(get_storage_manager)):
    """Connection status, number of stored readings and resource usage."""
    return await manager.get_system_status()


@router.get("/alert-settings", response_model=AlertSettings)
async def get_alert_settings(manager = Depends(get_storage_manager)):
    return await manager.get_alert_settings()


@router.put("/alert-settings", response_model=AlertSettings)
async def update_alert_settings(
    request: AlertSettingsUpdate,
    manager = Depends(get_storage_manager)
):
    """
    Turn alerts on or off.

    Body: {"temperatureAlerts": true, "phAlerts": false, "waterLevelAlerts": true}
    Only the fields you send are changed.
    """
    return await manager.update_alert_settings(request)


# =============================================================================
# SYNC & EXPORT
# =============================================================================

@router.post("/sync-antares", response_model=SyncResult)
async def sync_antares(manager = Depends(get_storage_manager)):
    """
    Fetch from upstream RIGHT NOW.

    You don't have to wait for the polling timer or the freshness window.
    """
    return await manager.sync_now()


@router.get("/export-data")
async def export_data(
    format: str = Query("json", description="'json' or 'csv'"),
    start_time: Optional[datetime] = Query(None, alias="startTime"),
    end_time: Optional[datetime] = Query(None, alias="endTime"),
    manager = Depends(get_storage_manager)
):
    """
    Export readings between startTime and endTime (inclusive), oldest first.

    Defaults to the last 24 hours. A startTime after endTime gives an
    empty export, not an error.
    """
    export_format = format.lower()
    if export_format not in EXPORT_FORMATS:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported format '{format}'. Use one of: {', '.join(EXPORT_FORMATS)}"
        )

    end = ensure_utc(end_time) or datetime.now(timezone.utc)
    start = ensure_utc(start_time) or end - DEFAULT_EXPORT_WINDOW

    readings = await manager.get_sensor_readings_by_time_range(start, end)

    if export_format == "json":
        return [reading.model_dump(mode="json", by_alias=True) for reading in readings]

    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(SensorReading.csv_header())
    writer.writerows(reading.to_csv_row() for reading in readings)
    filename = sanitize_filename(f"sensor-data_{start:%Y%m%dT%H%M%S}_{end:%Y%m%dT%H%M%S}.csv")

    return Response(
        content=output.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
