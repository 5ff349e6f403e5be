"""Runs the station's producer triggers and stops them on shutdown."""

from __future__ import annotations

from typing import Any

from puppystation.triggers.base import BaseTrigger, FireHandler, TriggerConfig, logger
from puppystation.triggers.file_watch import FileWatchTrigger
from puppystation.triggers.schedule import ScheduleTrigger

TRIGGER_KINDS: dict[str, type[BaseTrigger]] = {
    cls.kind: cls for cls in (FileWatchTrigger, ScheduleTrigger)
}


class TriggerManager:
    def __init__(self) -> None:
        self._running: list[BaseTrigger] = []

    async def register(self, config: TriggerConfig, handler: FireHandler) -> BaseTrigger:
        """Build the trigger for ``config.kind``, start it, and track it."""
        try:
            trigger_cls = TRIGGER_KINDS[config.kind]
        except KeyError:
            raise ValueError(f"Unknown trigger kind: {config.kind}") from None
        trigger = trigger_cls(config, handler)
        await trigger.start()
        self._running.append(trigger)
        logger.info(
            "trigger_started",
            trigger=config.id,
            kind=config.kind,
            description=config.description,
            interval=trigger.interval,
        )
        return trigger

    async def stop_all(self) -> None:
        while self._running:
            await self._running.pop().stop()

    def describe(self) -> list[dict[str, Any]]:
        return [t.describe() for t in self._running]

    def __len__(self) -> int:
        return len(self._running)
