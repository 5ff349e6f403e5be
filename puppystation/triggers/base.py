"""Producer triggers: interval loops that feed the Store and the bus.

Every trigger shares one loop: sleep for its interval, ``poll()`` for
something to report, hand a non-empty result to its handler. A handler
that raises is counted and logged, and the loop keeps going.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable

import structlog
from pydantic import BaseModel, Field

from puppystation.types import format_ts, utc_now

logger = structlog.get_logger()

FireHandler = Callable[[dict[str, Any]], Awaitable[None]]

_trigger_ids = iter(range(1, 1 << 62))


class TriggerConfig(BaseModel):
    """What to run and how often; ``params`` are kind-specific."""

    id: str = Field(default_factory=lambda: f"trg-{next(_trigger_ids)}")
    kind: str  # "file_watch" | "schedule"
    description: str = ""
    params: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class BaseTrigger(ABC):
    kind = ""
    default_interval: float = 60

    def __init__(self, config: TriggerConfig, handler: FireHandler | None = None) -> None:
        self.config = config
        self.interval = float(config.params.get("interval", self.default_interval))
        self._handler = handler
        self._loop_task: asyncio.Task | None = None
        self.fires = 0
        self.failures = 0
        self.last_fired_at: datetime | None = None

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def prime(self) -> None:
        """Runs once before the first interval; override to capture a baseline."""

    @abstractmethod
    async def poll(self) -> dict[str, Any] | None:
        """Called every interval. Return event data to fire, or None to skip."""

    def exhausted(self) -> bool:
        return False

    async def start(self) -> None:
        if self.is_running:
            return
        self._loop_task = asyncio.create_task(self._run(), name=f"trigger:{self.config.id}")

    async def stop(self) -> None:
        task, self._loop_task = self._loop_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        await self.prime()
        while not self.exhausted():
            await asyncio.sleep(self.interval)
            data = await self.poll()
            if data is not None:
                await self.fire(data)

    async def fire(self, data: dict[str, Any]) -> None:
        self.fires += 1
        self.last_fired_at = utc_now()
        if self._handler is None:
            return
        try:
            await self._handler({"trigger_kind": self.kind, **data})
        except Exception as e:
            self.failures += 1
            logger.warning(
                "trigger_handler_failed",
                trigger=self.config.id,
                kind=self.kind,
                error=str(e),
            )

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.config.id,
            "kind": self.kind,
            "description": self.config.description,
            "interval": self.interval,
            "active": self.is_running,
            "fires": self.fires,
            "failures": self.failures,
            "last_fired_at": format_ts(self.last_fired_at) if self.last_fired_at else None,
        }
