"""
Storage Manager
===============

This is the BRAIN of the whole operation!

WHAT IT DOES:
------------
1. Answers every read/write for readings, system status and alert settings
2. Pulls fresh telemetry from upstream (at most once per 10 second window)
3. Stores it in the database when the database is up
4. Keeps serving from memory when the database is down
5. Polls upstream on a timer (APScheduler) so the dashboard stays fresh

LIVE vs DEGRADED:
----------------
    LIVE      the database answered the last time we asked
    DEGRADED  it didn't (or there is no database), answer from memory

    LIVE --(any persistence error / upstream network failure)--> DEGRADED
    DEGRADED --(recovery check succeeds)--> LIVE

Every operation made while DEGRADED starts with ONE recovery check
(SELECT 1 through the gateway). No retry loops: if the check fails we
answer from memory right away. When it succeeds we're LIVE again and the
status row says "connected" - nobody has to flip anything by hand.

No database configured at all? Then we stay DEGRADED for good and the
status says "disconnected".

CONCURRENCY:
-----------
A scheduled poll and a "sync now" click can run at the same time.
- The 10 second freshness window is a soft rate limit, not a lock. Two
  callers landing right as the window expires may both fetch. That's fine:
  ingestion is at-least-once.
- data_points is always a COUNT(*) done in the same transaction that
  writes the status row, under a per-resource lock, so racing inserts
  can't double count.
- The in-memory fallback list has no lock. Two writers both prepend and
  the newest wins at the front. It's a best-effort cache; this weak
  consistency window is accepted.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import Table, func, select
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from hydromonitor.models import (
    AlertSettings,
    AlertSettingsUpdate,
    ConnectionStatus,
    InsertSensorReading,
    SensorReading,
    StorageState,
    SyncResult,
    SystemStatus,
    SystemStatusUpdate,
    ensure_utc,
)
from hydromonitor.models.tables import alert_settings, new_id, sensor_readings, system_status
from hydromonitor.services.external_fetcher import FetchFailure, TelemetryFetcher
from hydromonitor.services.persistence_gateway import PERSISTENCE_ERRORS, PersistenceGateway

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _column_values(values: dict) -> dict:
    """Enums go into the database as their plain values."""
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in values.items()}


class StorageManager:
    """
    The central manager for telemetry storage.

    HOW TO USE:
    ----------
    manager = StorageManager(gateway, fetcher, environment="production")
    await manager.initialize()
    manager.start_polling(60)

    readings = await manager.get_sensor_readings(limit=20)
    status = await manager.get_system_status()

    await manager.shutdown()
    """

    # Minimum seconds between upstream fetch attempts
    CACHE_TIMEOUT = 10.0

    # How many readings we keep in memory when the database is down
    FALLBACK_LIMIT = 100

    DEFAULT_LIMIT = 50

    # Plausible reading shown when there is nothing else to show
    SAMPLE_READING = {"temperature": 25.5, "ph": 6.8, "tds_level": 450.0}

    # Static resource figures shown on the dashboard
    DEFAULT_USAGE = {"cpu_usage": 23.0, "memory_usage": 30.0, "storage_usage": 26.0}

    ALERT_DEFAULTS = {"temperature_alerts": True, "ph_alerts": True, "tds_level_alerts": False}

    POLL_JOB_ID = "poll_upstream"

    def __init__(
        self,
        gateway: PersistenceGateway,
        fetcher: TelemetryFetcher,
        environment: str = "development",
        cache_timeout: float = CACHE_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Set up the manager.

        Args:
            gateway: Handle to the persistent store
            fetcher: Upstream telemetry fetcher
            environment: "development" persists seed data into an empty
                store; anything else keeps seed data in memory only
            cache_timeout: Freshness window in seconds
            clock: Monotonic clock (tests pass a fake one)
        """
        self.gateway = gateway
        self.fetcher = fetcher
        self.environment = environment.lower()
        self.cache_timeout = cache_timeout
        self._clock = clock

        self._started_at = _utcnow()
        self._last_external_fetch: Optional[float] = None

        # Without a store there is nothing to go LIVE against
        if gateway.is_configured:
            self.state = StorageState.LIVE
            initial_status = ConnectionStatus.CONNECTED
        else:
            self.state = StorageState.DEGRADED
            initial_status = ConnectionStatus.DISCONNECTED

        # In-memory fallback data (owned by this manager only)
        self._fallback_readings: list[SensorReading] = []
        self._fallback_status = SystemStatus(
            id="fallback",
            connection_status=initial_status,
            last_update=self._started_at,
            data_points=0,
            uptime=self._uptime(),
            **self.DEFAULT_USAGE,
        )
        self._fallback_settings = AlertSettings(id="fallback", **self.ALERT_DEFAULTS)

        # One lock per singleton row: read-modify-write stays atomic
        self._status_lock = asyncio.Lock()
        self._settings_lock = asyncio.Lock()

        # Overlapping reads of an empty store must seed it only once
        self._seed_lock = asyncio.Lock()

        # This is the scheduler - it runs the upstream poll on a timer
        self.scheduler = AsyncIOScheduler()

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    # =========================================================================
    # STARTUP / SHUTDOWN
    # =========================================================================

    async def initialize(self):
        """
        Check the store and create the singleton rows if they're missing.

        Never raises: a dead database just means we start DEGRADED.
        """
        engine = await self._live_handle()
        if engine is None:
            logger.info("Running in fallback mode without database persistence")
            return

        try:
            async with self._status_lock:
                async with engine.begin() as tx:
                    await self._upsert_singleton(tx, system_status, {}, self._status_defaults())
            async with self._settings_lock:
                async with engine.begin() as tx:
                    await self._upsert_singleton(tx, alert_settings, {}, dict(self.ALERT_DEFAULTS))
        except PERSISTENCE_ERRORS as e:
            self._store_failed("Creating default rows", e)
            return

        logger.info("Database connection successful")

    def start_polling(self, interval: int):
        """
        Poll upstream every `interval` seconds. 0 or less disables polling.

        Must be called from inside a running event loop.
        """
        if interval <= 0:
            logger.info("Background polling disabled")
            return

        self.scheduler.add_job(
            self._poll_upstream,
            trigger=IntervalTrigger(seconds=interval),
            id=self.POLL_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()
        logger.info(f"Polling upstream telemetry every {interval}s")

    async def _poll_upstream(self):
        """Scheduled job: one fetch-and-store cycle."""
        result = await self.sync_now()
        if not result.success:
            logger.info(f"Scheduled sync: {result.message}")

    async def shutdown(self):
        """Stop polling and release the HTTP client and database engine."""
        try:
            if self.scheduler.running:
                self.scheduler.shutdown(wait=False)
        except Exception as e:
            logger.error(f"Error shutting down scheduler: {e}", exc_info=True)

        await self.fetcher.close()
        await self.gateway.close()

    def describe(self) -> dict:
        """Snapshot for the health endpoint."""
        last_fetch_age = None
        if self._last_external_fetch is not None:
            last_fetch_age = round(self._clock() - self._last_external_fetch, 1)
        return {
            "storage_state": self.state.value,
            "database_configured": self.gateway.is_configured,
            "telemetry_source": self.fetcher.mode,
            "fallback_readings": len(self._fallback_readings),
            "seconds_since_last_fetch": last_fetch_age,
        }

    # =========================================================================
    # STATE MACHINE
    # =========================================================================

    def _enter_degraded(self, status: ConnectionStatus, reason: str):
        """LIVE -> DEGRADED (logged once per transition)."""
        self._fallback_status.connection_status = status
        self._fallback_status.last_update = _utcnow()
        if self.state is StorageState.LIVE:
            self.state = StorageState.DEGRADED
            logger.warning(f"Database not available ({reason}), using in-memory fallback")

    def _store_failed(self, operation: str, error: Exception):
        logger.warning(f"{operation} failed: {error}")
        self._enter_degraded(ConnectionStatus.ERROR, f"{operation.lower()} failed")

    async def _enter_live(self, engine: AsyncEngine):
        """DEGRADED -> LIVE, and record it in the status row."""
        if self.state is StorageState.LIVE:
            return

        self.state = StorageState.LIVE
        self._fallback_status.connection_status = ConnectionStatus.CONNECTED
        logger.info("Database recovered, back to live mode")

        try:
            async with self._status_lock:
                async with engine.begin() as tx:
                    await self._upsert_singleton(
                        tx,
                        system_status,
                        self._status_changes({"connection_status": ConnectionStatus.CONNECTED}),
                        self._status_defaults(),
                    )
        except PERSISTENCE_ERRORS as e:
            self._store_failed("Recording recovery", e)

    async def _live_handle(self, recheck: bool = True) -> Optional[AsyncEngine]:
        """
        Get the engine if we're (or can get back to) LIVE.

        Args:
            recheck: While DEGRADED, spend this call's one recovery check.
                Read paths pass False when their priming fetch already
                talked to the store in the same call.

        Returns:
            The engine, or None if the caller should use the fallback
        """
        conn = self.gateway.connection()
        if not conn.is_available:
            self._enter_degraded(ConnectionStatus.DISCONNECTED, "no persistent store configured")
            return None

        if self.state is StorageState.LIVE and self.gateway.schema_ready:
            return conn.handle

        if self.state is StorageState.DEGRADED and not recheck:
            return None

        if await self.gateway.health_check():
            await self._enter_live(conn.handle)
            return conn.handle if self.state is StorageState.LIVE else None

        self._enter_degraded(ConnectionStatus.ERROR, "database health check failed")
        return None

    # =========================================================================
    # UPSTREAM FETCH
    # =========================================================================

    def _cache_expired(self) -> bool:
        if self._last_external_fetch is None:
            return True
        return self._clock() - self._last_external_fetch >= self.cache_timeout

    async def _refresh_from_upstream(self) -> bool:
        """
        Fetch-and-store if the freshness window has passed and the store
        is reachable in principle.

        Returns:
            True if this call already touched the store (or degraded it),
            so the caller shouldn't spend another check
        """
        if not self._cache_expired() or not self.gateway.is_available:
            return False

        reading = await self._run_fetch_cycle()
        return reading is not None or self.fetcher.last_failure is FetchFailure.NETWORK

    async def _run_fetch_cycle(self) -> Optional[SensorReading]:
        """One upstream fetch, then store the result wherever we can."""
        # Stamp the attempt, not the success: the window limits attempts
        self._last_external_fetch = self._clock()

        reading = await self.fetcher.fetch_latest_reading()
        if reading is None:
            if self.fetcher.last_failure is FetchFailure.NETWORK:
                self._enter_degraded(ConnectionStatus.ERROR, "upstream telemetry endpoint unreachable")
            return None

        engine = await self._live_handle()
        if engine is not None:
            stored = reading.model_copy(update={"id": new_id()})
            if await self._persist_reading(engine, stored):
                logger.info(f"Successfully fetched and stored reading: {stored.id}")
                return stored

        self._remember(reading)
        return reading

    async def sync_now(self) -> SyncResult:
        """
        Fetch from upstream RIGHT NOW, ignoring the freshness window.

        Used by POST /api/sync-antares and by the scheduled poll.
        """
        reading = await self._run_fetch_cycle()
        status = await self.get_system_status()

        if reading is not None:
            message = "Latest reading synchronized"
        elif self.fetcher.last_failure is FetchFailure.DISABLED:
            message = "Telemetry source is not configured"
        elif self.fetcher.last_failure is FetchFailure.NETWORK:
            message = "Upstream telemetry endpoint is unreachable"
        elif self.fetcher.last_failure is FetchFailure.PAYLOAD:
            message = "Upstream returned no usable reading"
        else:
            message = "Sync failed, see server logs"

        return SyncResult(
            success=reading is not None,
            message=message,
            latest_reading=reading,
            connection_status=status.connection_status,
        )

    # =========================================================================
    # SENSOR READINGS
    # =========================================================================

    async def get_sensor_readings(self, limit: int = DEFAULT_LIMIT) -> list[SensorReading]:
        """
        Newest readings first.

        1. Refresh from upstream if the freshness window has passed
        2. DEGRADED: answer from memory (seeding one sample if empty)
        3. LIVE: query the store; an empty store gets one seed reading
        """
        limit = max(0, int(limit))
        already_contacted = await self._refresh_from_upstream()

        engine = await self._live_handle(recheck=not already_contacted)
        if engine is None:
            return self._fallback_slice(limit)

        try:
            async with engine.connect() as conn:
                result = await conn.execute(
                    select(sensor_readings)
                    .order_by(sensor_readings.c.timestamp.desc())
                    .limit(limit)
                )
                rows = result.all()
        except PERSISTENCE_ERRORS as e:
            self._store_failed("Reading sensor readings", e)
            return self._fallback_slice(limit)

        if rows:
            return [SensorReading.from_row(row) for row in rows]
        if limit == 0:
            return []
        return await self._seed_empty_store(engine, limit)

    async def get_latest_reading(self) -> Optional[SensorReading]:
        readings = await self.get_sensor_readings(limit=1)
        return readings[0] if readings else None

    async def get_sensor_readings_by_time_range(
        self, start_time: datetime, end_time: datetime
    ) -> list[SensorReading]:
        """
        Readings with start_time <= timestamp <= end_time, oldest first.

        DEGRADED returns the whole fallback list (no blending). An inverted
        range is simply empty.
        """
        start_time = ensure_utc(start_time)
        end_time = ensure_utc(end_time)

        already_contacted = await self._refresh_from_upstream()

        if start_time > end_time:
            return []

        engine = await self._live_handle(recheck=not already_contacted)
        if engine is None:
            logger.warning("Database not available for time range query, returning fallback data")
            return list(self._fallback_readings)

        try:
            async with engine.connect() as conn:
                result = await conn.execute(
                    select(sensor_readings)
                    .where(sensor_readings.c.timestamp >= start_time)
                    .where(sensor_readings.c.timestamp <= end_time)
                    .order_by(sensor_readings.c.timestamp.asc())
                )
                rows = result.all()
        except PERSISTENCE_ERRORS as e:
            self._store_failed("Time range query", e)
            return list(self._fallback_readings)

        return [SensorReading.from_row(row) for row in rows]

    async def create_sensor_reading(self, insert: InsertSensorReading) -> SensorReading:
        """
        Store a (pre-validated) reading.

        Falls back to memory if the store is down; callers always get the
        reading back.
        """
        now = _utcnow()
        reading = SensorReading(
            id=new_id(),
            timestamp=insert.timestamp or now,
            temperature=insert.temperature,
            ph=insert.ph,
            tds_level=insert.tds_level,
            created_at=now,
        )

        engine = await self._live_handle()
        if engine is not None and await self._persist_reading(engine, reading):
            return reading

        in_memory = reading.model_copy(update={"id": f"memory_{uuid.uuid4().hex}"})
        self._remember(in_memory)
        return in_memory

    async def _persist_reading(self, engine: AsyncEngine, reading: SensorReading) -> bool:
        """
        Insert a reading and recount data_points.

        Returns:
            True if the row was inserted (a failed recount still degrades
            but the reading is stored)
        """
        try:
            async with engine.begin() as tx:
                await tx.execute(
                    sensor_readings.insert().values(**reading.model_dump(by_alias=False))
                )
        except PERSISTENCE_ERRORS as e:
            self._store_failed("Storing reading", e)
            return False

        try:
            await self._recount_data_points(engine)
        except PERSISTENCE_ERRORS as e:
            self._store_failed("Recounting data points", e)
        return True

    async def _recount_data_points(self, engine: AsyncEngine) -> int:
        """data_points = COUNT(*), written in the same transaction."""
        async with self._status_lock:
            async with engine.begin() as tx:
                count = (
                    await tx.execute(select(func.count()).select_from(sensor_readings))
                ).scalar_one()
                await self._upsert_singleton(
                    tx,
                    system_status,
                    self._status_changes({"data_points": count}),
                    self._status_defaults(),
                )
        return count

    async def _seed_empty_store(self, engine: AsyncEngine, limit: int) -> list[SensorReading]:
        """
        Give an empty store something plausible to show.

        The emptiness check is repeated under the seed lock: a concurrent
        read may have seeded (or someone inserted) since our query.
        """
        if not self.is_development:
            # Never write synthetic data into a production store
            logger.info("No data available, using in-memory sample (production mode)")
            return [self._sample_reading()]

        async with self._seed_lock:
            try:
                async with engine.connect() as conn:
                    result = await conn.execute(
                        select(sensor_readings)
                        .order_by(sensor_readings.c.timestamp.desc())
                        .limit(limit)
                    )
                    rows = result.all()
            except PERSISTENCE_ERRORS as e:
                self._store_failed("Reading sensor readings", e)
                return self._fallback_slice(limit)

            if rows:
                return [SensorReading.from_row(row) for row in rows]

            logger.info("Providing sample data since no stored data available (development only)")
            sample = self._sample_reading(reading_id=new_id())
            if await self._persist_reading(engine, sample):
                return [sample]
        return self._fallback_slice(1)

    def _sample_reading(self, reading_id: Optional[str] = None) -> SensorReading:
        now = _utcnow()
        return SensorReading(
            id=reading_id or f"sample_{int(now.timestamp() * 1000)}",
            timestamp=now,
            created_at=now,
            **self.SAMPLE_READING,
        )

    def _fallback_slice(self, limit: int) -> list[SensorReading]:
        if not self._fallback_readings:
            logger.info("Providing sample data (fallback mode)")
            self._remember(self._sample_reading())
        return self._fallback_readings[:limit]

    def _remember(self, reading: SensorReading):
        """Prepend to the bounded in-memory list (newest first)."""
        self._fallback_readings.insert(0, reading)
        del self._fallback_readings[self.FALLBACK_LIMIT:]
        self._fallback_status.data_points = len(self._fallback_readings)
        self._fallback_status.last_update = _utcnow()

    # =========================================================================
    # SYSTEM STATUS
    # =========================================================================

    def _uptime(self) -> str:
        elapsed = int((_utcnow() - self._started_at).total_seconds())
        days, rest = divmod(elapsed, 86400)
        hours, rest = divmod(rest, 3600)
        return f"{days}d {hours}h {rest // 60}m"

    def _status_defaults(self) -> dict:
        return {
            "connection_status": ConnectionStatus.CONNECTED.value,
            "last_update": _utcnow(),
            "data_points": 0,
            "uptime": self._uptime(),
            **self.DEFAULT_USAGE,
        }

    def _status_changes(self, changes: dict) -> dict:
        """Every status write also stamps last_update and uptime."""
        return _column_values({**changes, "last_update": _utcnow(), "uptime": self._uptime()})

    def _fallback_status_snapshot(self) -> SystemStatus:
        self._fallback_status.uptime = self._uptime()
        return self._fallback_status.model_copy()

    async def get_system_status(self) -> SystemStatus:
        engine = await self._live_handle()
        if engine is None:
            return self._fallback_status_snapshot()

        try:
            async with engine.connect() as conn:
                row = (await conn.execute(select(system_status).limit(1))).first()
        except PERSISTENCE_ERRORS as e:
            self._store_failed("Reading system status", e)
            return self._fallback_status_snapshot()

        if row is None:
            # Return default if none exists yet
            return SystemStatus(id="default", **self._status_defaults())

        status = SystemStatus.from_row(row)
        status.uptime = self._uptime()
        return status

    async def update_system_status(self, update: SystemStatusUpdate) -> SystemStatus:
        """Partial update of the status row (created if missing)."""
        changes = update.model_dump(exclude_none=True)

        engine = await self._live_handle()
        if engine is not None:
            try:
                async with self._status_lock:
                    async with engine.begin() as tx:
                        values = await self._upsert_singleton(
                            tx, system_status, self._status_changes(changes), self._status_defaults()
                        )
                return SystemStatus.model_validate(values)
            except PERSISTENCE_ERRORS as e:
                self._store_failed("Updating system status", e)

        # Update fallback data in place
        for field, value in changes.items():
            setattr(self._fallback_status, field, value)
        self._fallback_status.last_update = _utcnow()
        return self._fallback_status_snapshot()

    # =========================================================================
    # ALERT SETTINGS
    # =========================================================================

    async def get_alert_settings(self) -> AlertSettings:
        engine = await self._live_handle()
        if engine is None:
            return self._fallback_settings.model_copy()

        try:
            async with engine.connect() as conn:
                row = (await conn.execute(select(alert_settings).limit(1))).first()
        except PERSISTENCE_ERRORS as e:
            self._store_failed("Reading alert settings", e)
            return self._fallback_settings.model_copy()

        if row is None:
            return AlertSettings(id="default", **self.ALERT_DEFAULTS)
        return AlertSettings.from_row(row)

    async def update_alert_settings(self, update: AlertSettingsUpdate) -> AlertSettings:
        """Read-modify-write of the settings row (created if missing)."""
        changes = update.model_dump(exclude_none=True)

        engine = await self._live_handle()
        if engine is not None:
            try:
                async with self._settings_lock:
                    async with engine.begin() as tx:
                        values = await self._upsert_singleton(
                            tx, alert_settings, changes, dict(self.ALERT_DEFAULTS)
                        )
                return AlertSettings.model_validate(values)
            except PERSISTENCE_ERRORS as e:
                self._store_failed("Updating alert settings", e)

        for field, value in changes.items():
            setattr(self._fallback_settings, field, value)
        return self._fallback_settings.model_copy()

    # =========================================================================
    # SINGLETON ROWS
    # =========================================================================

    @staticmethod
    async def _upsert_singleton(
        tx: AsyncConnection, table: Table, changes: dict, defaults: dict
    ) -> dict:
        """
        Apply `changes` to the table's only row, creating it from
        `defaults` if it doesn't exist. Runs inside the caller's
        transaction.

        Returns:
            The row as it is after the write
        """
        row = (await tx.execute(select(table).limit(1))).first()
        if row is None:
            values = {**defaults, **changes, "id": new_id()}
            await tx.execute(table.insert().values(**values))
            return values

        if changes:
            await tx.execute(table.update().where(table.c.id == row.id).values(**changes))
        return {**dict(row._mapping), **changes}
