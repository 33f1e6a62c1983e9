"""
Models Package
==============

This is where all our data models live.
Import from here instead of the individual files.

Example:
    from hydromonitor.models import SensorReading, InsertSensorReading
"""

from .telemetry import (
    # Enums
    ConnectionStatus,
    StorageState,

    # Stored records
    SensorReading,
    SystemStatus,
    AlertSettings,

    # What the dashboard sends us
    InsertSensorReading,
    SystemStatusUpdate,
    AlertSettingsUpdate,

    # Internal
    DecodedReading,
    SyncResult,
    ensure_utc,
)

__all__ = [
    "ConnectionStatus",
    "StorageState",
    "SensorReading",
    "SystemStatus",
    "AlertSettings",
    "InsertSensorReading",
    "SystemStatusUpdate",
    "AlertSettingsUpdate",
    "DecodedReading",
    "SyncResult",
    "ensure_utc",
]
