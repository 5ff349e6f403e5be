"""Station — wires the Store, readers, fan-out and producers together."""

from __future__ import annotations

import logging

from puppystation.config import StationSettings, settings as default_settings
from puppystation.events.bus import ChangeBus
from puppystation.events.fanout import ConnectionRegistry
from puppystation.exceptions import StationError
from puppystation.producers import DEFAULT_AGENT, FileActivityAdapter, MetricsSampler, SyntheticActivity
from puppystation.store.reader import ProjectionReader
from puppystation.store.seed import seed_fleet
from puppystation.store.store import Store
from puppystation.triggers.base import TriggerConfig
from puppystation.triggers.manager import TriggerManager
from puppystation.types import ActivityKind

_logger = logging.getLogger(__name__)


class Station:
    """One process worth of live state: a single writer, many readers."""

    def __init__(self, config: StationSettings | None = None) -> None:
        self.settings = config or default_settings
        db_path = str(self.settings.db_path)
        self.bus = ChangeBus()
        self.store = Store(
            db_path,
            bus=self.bus,
            retention_per_agent=self.settings.activity_retention_per_agent,
            retention_global=self.settings.activity_retention_global,
        )
        self.reader = ProjectionReader(
            db_path,
            default_limit=self.settings.default_query_limit,
            max_limit=self.settings.max_query_limit,
        )
        self.connections = ConnectionRegistry(queue_size=self.settings.connection_queue_size)
        self.triggers = TriggerManager()
        self.metrics = MetricsSampler(self.bus)
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        await self.store.initialize()
        await self.reader.open()
        self.connections.attach(self.bus)
        if self.settings.seed_on_start and await seed_fleet(self.store):
            _logger.info("Seeded a fresh station database at %s", self.store.db_path)
        await self._start_producers()
        self._started = True

    async def _start_producers(self) -> None:
        s = self.settings
        if s.file_watch_enabled:
            if s.watch_dir.exists():
                await self.triggers.register(
                    TriggerConfig(
                        kind="file_watch",
                        description="workspace file changes",
                        params={
                            "path": str(s.watch_dir),
                            "patterns": s.watch_patterns,
                            "interval": s.watch_interval_seconds,
                        },
                    ),
                    FileActivityAdapter(self.store),
                )
            else:
                _logger.info("Workspace %s not found; file watcher disabled", s.watch_dir)
        if s.synthetic_activity_enabled:
            await self.triggers.register(
                TriggerConfig(
                    kind="schedule",
                    description="synthetic agent activity",
                    params={"interval": s.synthetic_interval_seconds},
                ),
                SyntheticActivity(self.store, self.reader),
            )
        if s.metrics_enabled:
            await self.triggers.register(
                TriggerConfig(
                    kind="schedule",
                    description="host metrics",
                    params={"interval": s.metrics_interval_seconds},
                ),
                self.metrics,
            )

    async def announce_startup(self, version: str, port: int) -> None:
        """Log the startup activity on the coordinator's feed."""
        try:
            await self.store.log_activity(
                DEFAULT_AGENT,
                ActivityKind.SYSTEM.value,
                "Puppy Station dashboard started",
                {"version": version, "port": port},
            )
        except StationError as e:
            _logger.warning("Startup activity not logged: %s", e)

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.triggers.stop_all()
        self.connections.close_all()
        self.connections.detach()
        await self.reader.close()
        await self.store.close()
