"""Fixed-interval trigger for the synthetic activity and metrics producers."""

from __future__ import annotations

from typing import Any

from puppystation.triggers.base import BaseTrigger, TriggerConfig
from puppystation.types import format_ts, utc_now


class ScheduleTrigger(BaseTrigger):
    """Fires every ``interval`` seconds, optionally only ``max_fires`` times."""

    kind = "schedule"

    def __init__(self, config: TriggerConfig, handler=None) -> None:
        super().__init__(config, handler)
        self.max_fires = int(config.params.get("max_fires", 0))

    def exhausted(self) -> bool:
        return 0 < self.max_fires <= self.fires

    async def poll(self) -> dict[str, Any]:
        return {"fire_count": self.fires + 1, "fired_at": format_ts(utc_now())}
