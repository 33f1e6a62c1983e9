"""
HydroMonitor - Backend API
==========================
FastAPI application serving hydroponic telemetry to the dashboard.

ARCHITECTURE:
    [Dashboard] --HTTP--> [This Backend] --HTTPS--> [Upstream Telemetry API]
                                |
                                v
                        [PostgreSQL / SQLite]
                     (optional - we fall back to memory)

    The backend polls the upstream API, decodes the devices' hex payloads
    (temperature, pH, TDS) and stores the readings. If the database is
    down the dashboard keeps getting plausible data from memory.

HOW TO RUN:
    # Install
    pip install -e .

    # Copy environment config and edit it
    cp env.example.txt .env

    # Run the server
    uvicorn hydromonitor.main:app --reload --port 8000

API DOCUMENTATION:
    After starting the server, visit:
    - Swagger UI: http://localhost:8000/docs
    - ReDoc: http://localhost:8000/redoc
"""

import logging
import os
import sys
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from hydromonitor.routers import dev_upstream_router, set_storage_manager, telemetry_router
from hydromonitor.services import PersistenceGateway, StorageManager, TelemetryFetcher


# Load environment variables from .env file
load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='[%(asctime)s] %(levelname)s %(name)s: %(message)s',
    datefmt='%H:%M:%S',
    handlers=[logging.StreamHandler(sys.stderr)]
)
logger = logging.getLogger(__name__)


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# =============================================================================
# CONFIGURATION
# =============================================================================

class Config:
    """
    Application configuration loaded from environment variables.

    Environment Variables:
        ENVIRONMENT: "development" (default) or anything else (production-like)
        DATABASE_URL: SQLAlchemy async URL; unset = memory only
        DATABASE_STRICT_SSL: Verify database certificates (default: on outside development)
        TELEMETRY_SOURCE: "external" (hex API, default) or "antares"
        EXTERNAL_DB_API_URL / EXTERNAL_DB_API_KEY: hex API endpoint and key
        ANTARES_API_KEY / ANTARES_APPLICATION_ID / ANTARES_DEVICE_ID / ANTARES_BASE_URL
        POLLING_INTERVAL: Seconds between background fetches (default 60, 0 = off)
        CACHE_TIMEOUT: Freshness window in seconds (default 10)
        FRONTEND_URL: URL of the dashboard for CORS

    In development the upstream defaults point at our own test endpoint
    (/api/test/latest-readings/HZ1). Outside development there are no
    fallbacks: missing credentials just disable the fetcher.
    """

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").strip().lower()
    IS_DEVELOPMENT = ENVIRONMENT == "development"

    # Persistent store
    DATABASE_URL = os.getenv("DATABASE_URL") or None
    DATABASE_STRICT_SSL = _env_flag("DATABASE_STRICT_SSL", not IS_DEVELOPMENT)

    # Upstream telemetry
    TELEMETRY_SOURCE = os.getenv("TELEMETRY_SOURCE", "external").strip().lower()

    EXTERNAL_DB_API_URL = os.getenv(
        "EXTERNAL_DB_API_URL",
        "http://localhost:8000/api/test/latest-readings/HZ1" if IS_DEVELOPMENT else ""
    )
    EXTERNAL_DB_API_KEY = os.getenv(
        "EXTERNAL_DB_API_KEY",
        "test-sensor-api-key-12345" if IS_DEVELOPMENT else ""
    )

    ANTARES_API_KEY = os.getenv("ANTARES_API_KEY", "")
    ANTARES_APPLICATION_ID = os.getenv("ANTARES_APPLICATION_ID", "")
    ANTARES_DEVICE_ID = os.getenv("ANTARES_DEVICE_ID", "")
    ANTARES_BASE_URL = os.getenv("ANTARES_BASE_URL") or None

    # Polling interval in seconds
    POLLING_INTERVAL = int(os.getenv("POLLING_INTERVAL", "60"))

    # Freshness window in seconds
    CACHE_TIMEOUT = float(os.getenv("CACHE_TIMEOUT", "10"))

    # Frontend URL for CORS
    FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

    # Allowed CORS origins
    CORS_ORIGINS = [
        FRONTEND_URL,
        "http://localhost:5173",    # Vite dev server
        "http://localhost:3000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:3000",
    ]


def build_fetcher() -> TelemetryFetcher:
    """Pick the upstream source from configuration."""
    if Config.TELEMETRY_SOURCE == "antares":
        return TelemetryFetcher.for_antares(
            api_key=Config.ANTARES_API_KEY,
            application_id=Config.ANTARES_APPLICATION_ID,
            device_id=Config.ANTARES_DEVICE_ID,
            base_url=Config.ANTARES_BASE_URL,
        )
    return TelemetryFetcher(
        api_url=Config.EXTERNAL_DB_API_URL,
        api_key=Config.EXTERNAL_DB_API_KEY,
    )


def build_storage_manager() -> StorageManager:
    gateway = PersistenceGateway(Config.DATABASE_URL, strict_ssl=Config.DATABASE_STRICT_SSL)
    return StorageManager(
        gateway=gateway,
        fetcher=build_fetcher(),
        environment=Config.ENVIRONMENT,
        cache_timeout=Config.CACHE_TIMEOUT,
    )


# =============================================================================
# APPLICATION LIFESPAN
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    STARTUP:
        1. Build gateway, fetcher and storage manager
        2. Check the database (a dead one just means fallback mode)
        3. Inject manager into routers
        4. Start background polling

    SHUTDOWN:
        1. Stop polling
        2. Close HTTP client and database engine
    """
    # ========== STARTUP ==========
    logger.info("=" * 60)
    logger.info("HYDROMONITOR - Starting Backend")
    logger.info("=" * 60)

    storage_manager = build_storage_manager()
    await storage_manager.initialize()

    set_storage_manager(storage_manager)
    storage_manager.start_polling(Config.POLLING_INTERVAL)

    logger.info(f"Environment: {Config.ENVIRONMENT}")
    logger.info(f"Storage state: {storage_manager.state.value}")
    logger.info(f"Telemetry source: {storage_manager.fetcher.mode}")
    logger.info(f"Polling interval: {Config.POLLING_INTERVAL} seconds")
    logger.info(f"CORS origins: {len(Config.CORS_ORIGINS)} configured")

    yield  # Application runs here

    # ========== SHUTDOWN ==========
    logger.info("Shutting down...")
    await storage_manager.shutdown()
    set_storage_manager(None)
    logger.info("Shutdown complete")


# =============================================================================
# CREATE FASTAPI APPLICATION
# =============================================================================

app = FastAPI(
    title="HydroMonitor API",
    description="""
## Overview

Backend API for a hydroponic monitoring dashboard.

## How It Works

1. **Fetch** - Every 60 seconds (and at most every 10 seconds on demand)
   the backend pulls the latest reading from the upstream telemetry API
2. **Decode** - Device payloads are hex; each device family has its own layout
3. **Store** - Readings go into the database, or into memory if it's down
4. **Serve** - The dashboard reads readings, status and alert settings

## Degraded Mode

If the database is unreachable, every endpoint keeps answering from an
in-memory fallback and `/api/system-status` reports `error` (or
`disconnected` when no database is configured). It recovers on its own.
    """,
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)


# =============================================================================
# CORS MIDDLEWARE
# =============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=Config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# INCLUDE ROUTERS
# =============================================================================

app.include_router(telemetry_router)

# Local stand-in for the upstream API
if Config.IS_DEVELOPMENT:
    app.include_router(dev_upstream_router)


# =============================================================================
# ROOT ENDPOINTS
# =============================================================================

@app.get(
    "/",
    summary="API Information",
    description="Get basic API information and available endpoints."
)
async def root():
    """Root endpoint with API overview."""
    return {
        "name": "HydroMonitor API",
        "version": "1.0.0",
        "documentation": {
            "swagger": "/docs",
            "redoc": "/redoc",
            "openapi": "/openapi.json"
        },
        "endpoints": {
            "readings": "GET /api/sensor-readings?limit=N",
            "add_reading": "POST /api/sensor-readings",
            "latest": "GET /api/sensor-readings/latest",
            "system_status": "GET /api/system-status",
            "alert_settings": "GET|PUT /api/alert-settings",
            "sync": "POST /api/sync-antares",
            "export": "GET /api/export-data?format=json|csv&startTime=...&endTime=..."
        }
    }


@app.get(
    "/health",
    summary="Health Check",
    description="Check if the backend is running and where it's serving data from."
)
async def health():
    """Health check endpoint."""
    from hydromonitor.routers.telemetry import _storage_manager

    info = {
        "status": "healthy",
        "environment": Config.ENVIRONMENT,
        "polling_interval": Config.POLLING_INTERVAL,
    }
    if _storage_manager is not None:
        info.update(_storage_manager.describe())
    return info
