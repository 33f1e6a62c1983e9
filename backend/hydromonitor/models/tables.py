"""
Database Tables
===============
SQLAlchemy Core tables for the persistent store.

- sensor_readings: append-only, one row per reading
- system_status:   exactly one row (created on first write)
- alert_settings:  exactly one row (created on first write)

Primary keys are string UUIDs generated by the application, so the same
schema works on PostgreSQL and SQLite.
"""

import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, MetaData, String, Table


metadata = MetaData()


def new_id() -> str:
    """Generate a row identifier."""
    return str(uuid.uuid4())


sensor_readings = Table(
    "sensor_readings",
    metadata,
    Column("id", String(64), primary_key=True, default=new_id),
    Column("timestamp", DateTime(timezone=True), nullable=False, index=True),
    Column("temperature", Float, nullable=False),
    Column("ph", Float, nullable=False),
    Column("tds_level", Float, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

system_status = Table(
    "system_status",
    metadata,
    Column("id", String(64), primary_key=True, default=new_id),
    Column("connection_status", String(16), nullable=False),
    Column("last_update", DateTime(timezone=True), nullable=False),
    Column("data_points", Integer, nullable=False, default=0),
    Column("cpu_usage", Float, nullable=False, default=0),
    Column("memory_usage", Float, nullable=False, default=0),
    Column("storage_usage", Float, nullable=False, default=0),
    Column("uptime", String(32), nullable=False),
)

alert_settings = Table(
    "alert_settings",
    metadata,
    Column("id", String(64), primary_key=True, default=new_id),
    Column("temperature_alerts", Boolean, nullable=False, default=True),
    Column("ph_alerts", Boolean, nullable=False, default=True),
    Column("tds_level_alerts", Boolean, nullable=False, default=False),
)
