"""Shared test fixtures: temp-file databases, a seeded store, an API client."""

from __future__ import annotations

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from puppystation.config import StationSettings
from puppystation.dashboard.app import configure, dashboard_app
from puppystation.events.bus import ChangeBus, StateChange
from puppystation.station import Station
from puppystation.store.reader import ProjectionReader
from puppystation.store.seed import seed_fleet
from puppystation.store.store import Store


class ChangeRecorder:
    """Collects every change emitted on a bus, in order."""

    def __init__(self, bus: ChangeBus) -> None:
        self.changes: list[StateChange] = []
        bus.subscribe("*", self._record)

    async def _record(self, change: StateChange) -> None:
        self.changes.append(change)

    @property
    def kinds(self) -> list[str]:
        return [c.kind.value for c in self.changes]

    def clear(self) -> None:
        self.changes.clear()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "station.db")


@pytest.fixture
def bus():
    return ChangeBus()


@pytest.fixture
def recorder(bus):
    return ChangeRecorder(bus)


@pytest_asyncio.fixture
async def store(db_path, bus):
    s = Store(db_path, bus=bus, retention_per_agent=50, retention_global=1000)
    await s.initialize()
    for agent_id, name in (("buppy", "Buppy"), ("zoomie", "Zoomie"), ("mechly", "Mechly")):
        await s.create_agent(agent_id, name)
    yield s
    await s.close()


@pytest_asyncio.fixture
async def reader(store, db_path):
    r = ProjectionReader(db_path, default_limit=20, max_limit=200)
    await r.open()
    yield r
    await r.close()


@pytest_asyncio.fixture
async def seeded_store(db_path, bus):
    s = Store(db_path, bus=bus)
    await s.initialize()
    await seed_fleet(s)
    yield s
    await s.close()


@pytest.fixture
def station_settings(tmp_path):
    return StationSettings(
        workspace_dir=tmp_path,
        db_path=tmp_path / "dashboard.db",
        file_watch_enabled=False,
        synthetic_activity_enabled=False,
        metrics_enabled=False,
    )


@pytest.fixture
def client(station_settings):
    configure(Station(station_settings))
    with TestClient(dashboard_app) as c:
        yield c
    configure(None)
