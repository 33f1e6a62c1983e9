"""
Routers Package
===============

Routers are like the reception desk - they direct incoming requests
to the right place.
"""

from .telemetry import router as telemetry_router, set_storage_manager
from .dev_upstream import router as dev_upstream_router

__all__ = [
    "telemetry_router",
    "dev_upstream_router",
    "set_storage_manager",
]
