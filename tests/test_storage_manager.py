"""Tests for StorageManager - real SQLite store, scripted upstream."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import StubFetcher, make_reading
from hydromonitor.models import (
    AlertSettingsUpdate,
    ConnectionStatus,
    InsertSensorReading,
    StorageState,
    SystemStatusUpdate,
)
from hydromonitor.services import FetchFailure

T0 = datetime(2026, 1, 5, 8, 0, tzinfo=timezone.utc)

# -----------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------


def _insert(temperature: float = 24.0, timestamp=None) -> InsertSensorReading:
    return InsertSensorReading(temperature=temperature, ph=6.5, tds_level=800, timestamp=timestamp)


# -----------------------------------------------------------------------
# Startup
# -----------------------------------------------------------------------


class TestInitialize:
    @pytest.mark.asyncio
    async def test_creates_singleton_rows(self, make_manager) -> None:
        manager = make_manager()
        await manager.initialize()

        status = await manager.get_system_status()
        settings = await manager.get_alert_settings()

        assert manager.state is StorageState.LIVE
        assert status.connection_status is ConnectionStatus.CONNECTED
        assert status.data_points == 0
        assert status.cpu_usage == 23.0
        assert settings.temperature_alerts is True
        assert settings.ph_alerts is True
        assert settings.tds_level_alerts is False

    @pytest.mark.asyncio
    async def test_initialize_twice_keeps_one_row(self, make_manager) -> None:
        manager = make_manager()
        await manager.initialize()
        first = await manager.get_alert_settings()

        await manager.initialize()

        assert (await manager.get_alert_settings()).id == first.id

    @pytest.mark.asyncio
    async def test_dead_store_starts_degraded(self, make_manager, gateway) -> None:
        gateway.broken = True
        manager = make_manager()
        await manager.initialize()

        assert manager.state is StorageState.DEGRADED
        assert (await manager.get_system_status()).connection_status is ConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_no_store_is_disconnected(self, make_manager) -> None:
        manager = make_manager(persistent=False)
        await manager.initialize()

        status = await manager.get_system_status()

        assert manager.state is StorageState.DEGRADED
        assert status.connection_status is ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_shutdown_closes_fetcher(self, make_manager) -> None:
        fetcher = StubFetcher()
        manager = make_manager(fetcher=fetcher)
        manager.start_polling(0)

        await manager.shutdown()

        assert fetcher.closed
        assert manager.scheduler.get_job(manager.POLL_JOB_ID) is None


# -----------------------------------------------------------------------
# Readings
# -----------------------------------------------------------------------


class TestReadings:
    @pytest.mark.asyncio
    async def test_create_then_read_back(self, make_manager) -> None:
        manager = make_manager()
        await manager.initialize()

        created = await manager.create_sensor_reading(_insert(22.5))
        latest = await manager.get_latest_reading()
        status = await manager.get_system_status()

        assert not created.id.startswith("memory_")
        assert latest.id == created.id
        assert latest.temperature == 22.5
        assert latest.tds_level == 800
        assert status.data_points == 1

    @pytest.mark.asyncio
    async def test_newest_first_with_limit(self, make_manager) -> None:
        manager = make_manager()
        await manager.initialize()
        for hours in range(5):
            await manager.create_sensor_reading(_insert(20 + hours, T0 + timedelta(hours=hours)))

        readings = await manager.get_sensor_readings(limit=3)

        assert [r.temperature for r in readings] == [24, 23, 22]

    @pytest.mark.asyncio
    async def test_concurrent_inserts_keep_exact_count(self, make_manager) -> None:
        manager = make_manager()
        await manager.initialize()

        await asyncio.gather(*(manager.create_sensor_reading(_insert()) for _ in range(10)))

        assert (await manager.get_system_status()).data_points == 10

    @pytest.mark.asyncio
    async def test_development_seeds_empty_store(self, make_manager) -> None:
        manager = make_manager(environment="development")
        await manager.initialize()

        readings = await manager.get_sensor_readings()

        assert len(readings) == 1
        assert readings[0].temperature == 25.5
        assert readings[0].ph == 6.8
        assert readings[0].tds_level == 450
        assert (await manager.get_system_status()).data_points == 1

    @pytest.mark.asyncio
    async def test_overlapping_reads_seed_once(self, make_manager) -> None:
        manager = make_manager(environment="development")
        await manager.initialize()

        readings, latest = await asyncio.gather(
            manager.get_sensor_readings(), manager.get_latest_reading()
        )

        assert latest.id == readings[0].id
        assert len(await manager.get_sensor_readings(limit=100)) == 1
        assert (await manager.get_system_status()).data_points == 1

    @pytest.mark.asyncio
    async def test_production_never_persists_seed(self, make_manager) -> None:
        manager = make_manager(environment="production")
        await manager.initialize()

        readings = await manager.get_sensor_readings()

        assert readings[0].id.startswith("sample_")
        assert readings[0].temperature == 25.5
        assert (await manager.get_system_status()).data_points == 0
        assert manager._fallback_readings == []

    @pytest.mark.asyncio
    async def test_zero_limit_is_empty(self, make_manager) -> None:
        manager = make_manager(environment="production")
        await manager.initialize()

        assert await manager.get_sensor_readings(limit=0) == []


class TestTimeRange:
    @pytest.mark.asyncio
    async def test_inclusive_and_oldest_first(self, make_manager) -> None:
        manager = make_manager()
        await manager.initialize()
        for hours in (2, 0, 1, 3):
            await manager.create_sensor_reading(_insert(20 + hours, T0 + timedelta(hours=hours)))

        readings = await manager.get_sensor_readings_by_time_range(T0, T0 + timedelta(hours=2))

        assert [r.temperature for r in readings] == [20, 21, 22]
        assert readings[0].timestamp == T0

    @pytest.mark.asyncio
    async def test_inverted_range_is_empty(self, make_manager) -> None:
        manager = make_manager()
        await manager.initialize()
        await manager.create_sensor_reading(_insert(timestamp=T0))

        assert await manager.get_sensor_readings_by_time_range(T0 + timedelta(hours=1), T0) == []

    @pytest.mark.asyncio
    async def test_degraded_returns_whole_fallback(self, make_manager) -> None:
        manager = make_manager(persistent=False)
        await manager.create_sensor_reading(_insert(timestamp=T0 - timedelta(days=30)))
        await manager.create_sensor_reading(_insert(timestamp=T0))

        readings = await manager.get_sensor_readings_by_time_range(T0, T0 + timedelta(minutes=1))

        assert len(readings) == 2


# -----------------------------------------------------------------------
# Fallback mode
# -----------------------------------------------------------------------


class TestFallback:
    @pytest.mark.asyncio
    async def test_memory_ids_without_store(self, make_manager) -> None:
        manager = make_manager(persistent=False)

        created = await manager.create_sensor_reading(_insert())

        assert created.id.startswith("memory_")
        assert (await manager.get_latest_reading()).id == created.id
        assert (await manager.get_system_status()).data_points == 1

    @pytest.mark.asyncio
    async def test_fallback_is_capped_newest_first(self, make_manager) -> None:
        manager = make_manager(persistent=False)
        for i in range(manager.FALLBACK_LIMIT + 5):
            await manager.create_sensor_reading(_insert(temperature=float(i % 100)))

        readings = await manager.get_sensor_readings(limit=1000)

        assert len(readings) == manager.FALLBACK_LIMIT
        assert readings[0].temperature == float((manager.FALLBACK_LIMIT + 4) % 100)

    @pytest.mark.asyncio
    async def test_empty_fallback_serves_sample(self, make_manager) -> None:
        manager = make_manager(persistent=False)

        readings = await manager.get_sensor_readings()

        assert len(readings) == 1
        assert readings[0].ph == 6.8

    @pytest.mark.asyncio
    async def test_settings_survive_in_memory(self, make_manager) -> None:
        manager = make_manager(persistent=False)

        updated = await manager.update_alert_settings(AlertSettingsUpdate(ph_alerts=False))

        assert updated.ph_alerts is False
        assert (await manager.get_alert_settings()).ph_alerts is False


# -----------------------------------------------------------------------
# LIVE <-> DEGRADED
# -----------------------------------------------------------------------


class TestDegradeAndRecover:
    @pytest.mark.asyncio
    async def test_failed_write_degrades_then_recovers(self, make_manager, gateway) -> None:
        manager = make_manager()
        await manager.initialize()

        gateway.broken = True
        created = await manager.create_sensor_reading(_insert())

        assert created.id.startswith("memory_")
        assert manager.state is StorageState.DEGRADED
        assert (await manager.get_system_status()).connection_status is ConnectionStatus.ERROR

        gateway.broken = False
        status = await manager.get_system_status()

        assert manager.state is StorageState.LIVE
        assert status.connection_status is ConnectionStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_failed_read_serves_fallback(self, make_manager, gateway) -> None:
        manager = make_manager(environment="production")
        await manager.initialize()

        gateway.broken = True
        readings = await manager.get_sensor_readings()

        assert manager.state is StorageState.DEGRADED
        assert readings[0].temperature == 25.5

    @pytest.mark.asyncio
    async def test_settings_write_while_down_stays_in_memory(self, make_manager, gateway) -> None:
        manager = make_manager()
        await manager.initialize()

        gateway.broken = True
        updated = await manager.update_alert_settings(AlertSettingsUpdate(tds_level_alerts=True))

        assert updated.tds_level_alerts is True
        assert manager.state is StorageState.DEGRADED


# -----------------------------------------------------------------------
# Upstream fetch
# -----------------------------------------------------------------------


class TestUpstream:
    @pytest.mark.asyncio
    async def test_fetched_reading_is_stored_with_new_id(self, make_manager) -> None:
        fetcher = StubFetcher([make_reading("upstream-1", temperature=26.0)])
        manager = make_manager(fetcher=fetcher)
        await manager.initialize()

        readings = await manager.get_sensor_readings()

        assert fetcher.calls == 1
        assert len(readings) == 1
        assert readings[0].temperature == 26.0
        assert readings[0].id != "upstream-1"

    @pytest.mark.asyncio
    async def test_freshness_window_limits_fetches(self, make_manager, clock) -> None:
        fetcher = StubFetcher([make_reading(f"r{i}") for i in range(5)])
        manager = make_manager(fetcher=fetcher)
        await manager.initialize()

        await manager.get_sensor_readings()
        await manager.get_latest_reading()
        clock.advance(9)
        await manager.get_sensor_readings()
        assert fetcher.calls == 1

        clock.advance(1)
        await manager.get_sensor_readings()
        assert fetcher.calls == 2

    @pytest.mark.asyncio
    async def test_failed_attempt_also_starts_window(self, make_manager, clock) -> None:
        fetcher = StubFetcher(failure=FetchFailure.PAYLOAD)
        manager = make_manager(fetcher=fetcher, environment="production")
        await manager.initialize()

        await manager.get_sensor_readings()
        await manager.get_sensor_readings()

        assert fetcher.calls == 1

    @pytest.mark.asyncio
    async def test_network_failure_degrades(self, make_manager) -> None:
        fetcher = StubFetcher(failure=FetchFailure.NETWORK)
        manager = make_manager(fetcher=fetcher, environment="production")
        await manager.initialize()

        readings = await manager.get_sensor_readings()

        assert manager.state is StorageState.DEGRADED
        assert readings[0].id.startswith("sample_")

        # next operation checks the (healthy) store and recovers
        await manager.get_alert_settings()
        assert manager.state is StorageState.LIVE

    @pytest.mark.asyncio
    async def test_payload_failure_does_not_degrade(self, make_manager) -> None:
        fetcher = StubFetcher(failure=FetchFailure.PAYLOAD)
        manager = make_manager(fetcher=fetcher)
        await manager.initialize()

        await manager.get_sensor_readings()

        assert manager.state is StorageState.LIVE

    @pytest.mark.asyncio
    async def test_no_priming_fetch_without_store(self, make_manager) -> None:
        fetcher = StubFetcher([make_reading()])
        manager = make_manager(fetcher=fetcher, persistent=False)

        await manager.get_sensor_readings()

        assert fetcher.calls == 0

    @pytest.mark.asyncio
    async def test_fetch_while_store_down_goes_to_memory(self, make_manager, gateway) -> None:
        fetcher = StubFetcher([make_reading("upstream-9", ph=5.9)])
        manager = make_manager(fetcher=fetcher)
        await manager.initialize()

        gateway.broken = True
        result = await manager.sync_now()

        assert result.success
        assert result.latest_reading.id == "upstream-9"
        assert result.connection_status is ConnectionStatus.ERROR
        assert manager._fallback_readings[0].ph == 5.9


class TestSyncNow:
    @pytest.mark.asyncio
    async def test_success(self, make_manager) -> None:
        fetcher = StubFetcher([make_reading("a"), make_reading("b")])
        manager = make_manager(fetcher=fetcher)
        await manager.initialize()

        first = await manager.sync_now()
        second = await manager.sync_now()

        # sync ignores the freshness window
        assert fetcher.calls == 2
        assert first.success and second.success
        assert first.connection_status is ConnectionStatus.CONNECTED
        assert (await manager.get_system_status()).data_points == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "failure, message",
        [
            (FetchFailure.DISABLED, "Telemetry source is not configured"),
            (FetchFailure.NETWORK, "Upstream telemetry endpoint is unreachable"),
            (FetchFailure.PAYLOAD, "Upstream returned no usable reading"),
            (FetchFailure.UNEXPECTED, "Sync failed, see server logs"),
        ],
    )
    async def test_failure_messages(self, make_manager, failure, message) -> None:
        manager = make_manager(fetcher=StubFetcher(failure=failure))
        await manager.initialize()

        result = await manager.sync_now()

        assert not result.success
        assert result.latest_reading is None
        assert result.message == message


# -----------------------------------------------------------------------
# Singleton rows
# -----------------------------------------------------------------------


class TestSingletons:
    @pytest.mark.asyncio
    async def test_partial_alert_update(self, make_manager) -> None:
        manager = make_manager()
        await manager.initialize()

        updated = await manager.update_alert_settings(AlertSettingsUpdate(ph_alerts=False))
        stored = await manager.get_alert_settings()

        assert updated.ph_alerts is False
        assert updated.temperature_alerts is True
        assert stored.ph_alerts is False
        assert stored.tds_level_alerts is False

    @pytest.mark.asyncio
    async def test_alert_update_creates_missing_row(self, make_manager) -> None:
        manager = make_manager()
        await manager.gateway.connect()

        updated = await manager.update_alert_settings(AlertSettingsUpdate(tds_level_alerts=True))

        assert updated.tds_level_alerts is True
        assert updated.temperature_alerts is True

    @pytest.mark.asyncio
    async def test_status_update(self, make_manager) -> None:
        manager = make_manager()
        await manager.initialize()

        updated = await manager.update_system_status(SystemStatusUpdate(cpu_usage=55.5))
        status = await manager.get_system_status()

        assert updated.cpu_usage == 55.5
        assert status.cpu_usage == 55.5
        assert status.memory_usage == 30.0

    @pytest.mark.asyncio
    async def test_uptime_format(self, make_manager) -> None:
        manager = make_manager()
        manager._started_at -= timedelta(days=3, hours=14, minutes=22, seconds=5)

        assert manager._uptime() == "3d 14h 22m"
