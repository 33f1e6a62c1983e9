"""Shared fixtures: a throwaway SQLite store, fault injection and a scripted fetcher."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError

from hydromonitor.models import SensorReading
from hydromonitor.services import FetchFailure, GatewayConnection, PersistenceGateway, StorageManager

# -----------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------


def make_reading(reading_id: str = "upstream-1", **overrides) -> SensorReading:
    now = datetime.now(timezone.utc)
    values = {
        "id": reading_id,
        "timestamp": now,
        "temperature": 24.0,
        "ph": 7.0,
        "tds_level": 200.0,
        "created_at": now,
    }
    values.update(overrides)
    return SensorReading(**values)


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubFetcher:
    """Hands out scripted readings, then fails with `failure`."""

    mode = "stub"

    def __init__(self, readings=None, failure: FetchFailure = FetchFailure.PAYLOAD) -> None:
        self.readings = list(readings or [])
        self.failure = failure
        self.last_failure: Optional[FetchFailure] = None
        self.calls = 0
        self.closed = False

    @property
    def enabled(self) -> bool:
        return self.failure is not FetchFailure.DISABLED

    async def fetch_latest_reading(self) -> Optional[SensorReading]:
        self.calls += 1
        if self.readings:
            self.last_failure = None
            return self.readings.pop(0)
        self.last_failure = self.failure
        return None

    async def close(self) -> None:
        self.closed = True


class _RefusedConnection:
    async def __aenter__(self):
        raise OperationalError("SELECT 1", {}, ConnectionRefusedError("connection refused"))

    async def __aexit__(self, *exc_info):
        return False


class BrokenEngine:
    """Engine whose every connection attempt is refused."""

    def begin(self):
        return _RefusedConnection()

    def connect(self):
        return _RefusedConnection()

    async def dispose(self) -> None:
        pass


class FaultyGateway(PersistenceGateway):
    """Real gateway that can be switched into a 'server is down' mode."""

    def __init__(self, database_url: Optional[str]) -> None:
        super().__init__(database_url)
        self.broken = False

    def connection(self) -> GatewayConnection:
        if self.broken:
            return GatewayConnection(handle=BrokenEngine(), is_available=True)
        return super().connection()


# -----------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------


@pytest.fixture
def sqlite_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'hydro.db'}"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def gateway(sqlite_url):
    gw = FaultyGateway(sqlite_url)
    yield gw
    await gw.close()


@pytest.fixture
def make_manager(gateway, clock):
    """Build a StorageManager over the SQLite gateway (or no store at all)."""

    def _make(
        fetcher: Optional[StubFetcher] = None,
        environment: str = "development",
        persistent: bool = True,
    ) -> StorageManager:
        return StorageManager(
            gateway=gateway if persistent else PersistenceGateway(None),
            fetcher=fetcher or StubFetcher(),
            environment=environment,
            clock=clock,
        )

    return _make
