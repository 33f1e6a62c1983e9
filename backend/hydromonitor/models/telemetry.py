"""
Telemetry Models
================
Pydantic models for hydroponic sensor telemetry.

This module defines all data structures used throughout the application:
- Stored models: readings, the system status row, the alert settings row
- Request models: What the dashboard sends to the backend
- Internal models: decoded device payloads and sync results

WIRE FORMAT:
    Attributes are snake_case in Python and camelCase in JSON
    (tds_level <-> tdsLevel, created_at <-> createdAt, ...).
    Both spellings are accepted on input.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class TelemetryModel(BaseModel):
    """Base model: camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite hands them back without tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class ConnectionStatus(str, Enum):
    """
    Connection status shown on the dashboard.

    - CONNECTED: persistent store reachable
    - DISCONNECTED: no persistent store configured
    - ERROR: last persistence (or upstream) operation failed
    """
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class StorageState(str, Enum):
    """
    Where the storage manager is answering from.

    State Flow:
    - LIVE -> DEGRADED: any persistence operation fails
    - DEGRADED -> LIVE: the next recovery check succeeds
    """
    LIVE = "live"
    DEGRADED = "degraded"


# =============================================================================
# SENSOR READINGS
# =============================================================================

class SensorReading(TelemetryModel):
    """
    One sensor sample.

    CSV Columns (in order):
        ID, Timestamp, Temperature (°C), pH, TDS (ppm), Created At
    """
    id: str = Field(..., description="Opaque identifier")
    timestamp: datetime = Field(..., description="When the sample was taken")
    temperature: float = Field(..., description="Water temperature in °C")
    ph: float = Field(..., description="pH (0-14)")
    tds_level: float = Field(..., description="Total dissolved solids in ppm")
    created_at: datetime = Field(..., description="When the reading was stored")

    @field_validator("timestamp", "created_at")
    @classmethod
    def normalize_timestamps(cls, value):
        return ensure_utc(value)

    @classmethod
    def from_row(cls, row) -> "SensorReading":
        """Build a reading from a sensor_readings row."""
        return cls.model_validate(dict(row._mapping))

    def to_csv_row(self) -> list:
        """Field values in CSV column order (quoting is the writer's job)."""
        return [
            self.id,
            self.timestamp.isoformat(),
            self.temperature,
            self.ph,
            self.tds_level,
            self.created_at.isoformat(),
        ]

    @staticmethod
    def csv_header() -> list[str]:
        """Return CSV header columns."""
        return ["ID", "Timestamp", "Temperature (°C)", "pH", "TDS (ppm)", "Created At"]


class InsertSensorReading(TelemetryModel):
    """
    Request body for recording a reading by hand.

    Example Request:
        POST /api/sensor-readings
        {
            "temperature": 24.5,
            "ph": 6.2,
            "tdsLevel": 820
        }
    """
    temperature: float = Field(..., ge=-50, le=100, description="Temperature in °C")
    ph: float = Field(..., ge=0, le=14, description="pH")
    tds_level: float = Field(..., ge=0, le=2000, description="TDS in ppm")
    timestamp: Optional[datetime] = Field(None, description="Sample time (defaults to now)")

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value):
        return ensure_utc(value)


# =============================================================================
# SYSTEM STATUS
# =============================================================================

class SystemStatus(TelemetryModel):
    """
    The single system status record.

    data_points always mirrors the number of stored readings; it is
    recounted after every insert.
    """
    id: str = Field(..., description="Row identifier")
    connection_status: ConnectionStatus = Field(..., description="Store connectivity")
    last_update: datetime = Field(..., description="Last time the status changed")
    data_points: int = Field(0, description="Number of stored readings")
    cpu_usage: float = Field(0, description="CPU usage %")
    memory_usage: float = Field(0, description="Memory usage %")
    storage_usage: float = Field(0, description="Storage usage %")
    uptime: str = Field(..., description="Display string like '3d 14h 22m'")

    @field_validator("last_update")
    @classmethod
    def normalize_last_update(cls, value):
        return ensure_utc(value)

    @classmethod
    def from_row(cls, row) -> "SystemStatus":
        return cls.model_validate(dict(row._mapping))


class SystemStatusUpdate(TelemetryModel):
    """Partial status update. Only provided fields are written."""
    connection_status: Optional[ConnectionStatus] = None
    data_points: Optional[int] = Field(None, ge=0)
    cpu_usage: Optional[float] = None
    memory_usage: Optional[float] = None
    storage_usage: Optional[float] = None
    uptime: Optional[str] = None


# =============================================================================
# ALERT SETTINGS
# =============================================================================

class AlertSettings(TelemetryModel):
    """Which alerts the dashboard should raise."""
    id: str = Field(..., description="Row identifier")
    temperature_alerts: bool = Field(True, description="Alert on temperature")
    ph_alerts: bool = Field(True, description="Alert on pH")
    tds_level_alerts: bool = Field(False, description="Alert on TDS level")

    @classmethod
    def from_row(cls, row) -> "AlertSettings":
        return cls.model_validate(dict(row._mapping))


class AlertSettingsUpdate(TelemetryModel):
    """
    Request body for PUT /api/alert-settings.

    The dashboard still sends the TDS toggle as "waterLevelAlerts";
    both names are accepted.
    """
    temperature_alerts: Optional[bool] = None
    ph_alerts: Optional[bool] = None
    tds_level_alerts: Optional[bool] = Field(
        None,
        validation_alias=AliasChoices("tdsLevelAlerts", "waterLevelAlerts", "tds_level_alerts"),
    )


# =============================================================================
# DECODED DEVICE PAYLOADS
# =============================================================================

class DecodedReading(BaseModel):
    """
    Physical values recovered from a hex payload.

    Which fields are set depends on the device family; see
    hydromonitor.services.hex_decoder.
    """
    ph: Optional[float] = None
    moisture: Optional[float] = None
    ec: Optional[float] = None
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    light: Optional[float] = None
    tds_level: Optional[float] = None


# =============================================================================
# SYNC RESULT
# =============================================================================

class SyncResult(TelemetryModel):
    """
    Response from a manual sync.

    Returned when calling POST /api/sync-antares
    """
    success: bool = Field(..., description="Whether a reading was fetched")
    message: str = Field(..., description="Human readable outcome")
    latest_reading: Optional[SensorReading] = Field(None, description="The fetched reading")
    connection_status: ConnectionStatus = Field(..., description="Store connectivity after the sync")
