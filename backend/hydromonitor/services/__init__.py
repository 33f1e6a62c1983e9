"""
Services Package
================

These are the "workers" that do the actual work.

- hex_decoder: Turns device hex payloads into physical units
- TelemetryFetcher: Talks to the upstream telemetry API
- PersistenceGateway: Owns the database connection
- StorageManager: The boss that decides where every answer comes from
"""

from . import hex_decoder
from .external_fetcher import FetchFailure, TelemetryFetcher
from .persistence_gateway import PERSISTENCE_ERRORS, GatewayConnection, PersistenceGateway
from .storage_manager import StorageManager

__all__ = [
    "hex_decoder",
    "FetchFailure",
    "TelemetryFetcher",
    "PERSISTENCE_ERRORS",
    "GatewayConnection",
    "PersistenceGateway",
    "StorageManager",
]
