"""Event producers that feed the Store from outside the REST surface.

- FileActivityAdapter: maps workspace file edits to agent activity
- SyntheticActivity: periodic background chatter from a random agent
- MetricsSampler: host CPU/memory, pushed to viewers but never persisted
"""

from __future__ import annotations

import os
import random
from pathlib import Path
from typing import Any

import structlog

from puppystation.events.bus import ChangeBus, ChangeKind
from puppystation.exceptions import StationError
from puppystation.store.reader import ProjectionReader
from puppystation.store.store import Store
from puppystation.types import ActivityKind, format_ts, utc_now

logger = structlog.get_logger()

DEFAULT_AGENT = "buppy"

# Later rules win.
AGENT_PATH_RULES = [("zoomie", "zoomie"), ("mechly", "mechly")]
FILE_TYPE_RULES = [
    ("SOUL", ActivityKind.SOUL_UPDATE),
    ("IDENTITY", ActivityKind.IDENTITY_UPDATE),
    ("config", ActivityKind.CONFIG_UPDATE),
    ("MEMORY", ActivityKind.MEMORY_UPDATE),
]

SYNTHETIC_COMMANDS = [
    "Checked system status",
    "Reviewed agent activities",
    "Updated configuration",
    "Processed user request",
    "Synced with OpenClaw gateway",
    "Polled for new messages",
    "Ran heartbeat check",
]


def classify_path(path: str) -> tuple[str, ActivityKind]:
    """Agent id and activity kind for a changed workspace file."""
    agent_id = DEFAULT_AGENT
    for needle, candidate in AGENT_PATH_RULES:
        if needle in path:
            agent_id = candidate

    kind = ActivityKind.FILE_UPDATE
    file_name = Path(path).name
    for needle, candidate in FILE_TYPE_RULES:
        if needle in file_name:
            kind = candidate
    return agent_id, kind


class FileActivityAdapter:
    """Turns file-watch firings into logged activity."""

    def __init__(self, store: Store) -> None:
        self._store = store
        self.logged = 0

    async def __call__(self, event_data: dict[str, Any]) -> None:
        changes = event_data.get("changes", {})
        for path in changes.get("modified", []) + changes.get("added", []):
            agent_id, kind = classify_path(path)
            try:
                await self._store.log_activity(
                    agent_id, kind.value, f"Updated {Path(path).name}", {"file": path},
                )
                self.logged += 1
            except StationError as e:
                logger.warning("file_activity_rejected", path=path, agent=agent_id, error=str(e))


class SyntheticActivity:
    """Logs a random command for a random agent on each firing."""

    def __init__(self, store: Store, reader: ProjectionReader, rng: random.Random | None = None) -> None:
        self._store = store
        self._reader = reader
        self._rng = rng or random.Random()

    async def __call__(self, event_data: dict[str, Any]) -> None:
        agents = await self._reader.list_agents()
        if not agents:
            return
        agent = self._rng.choice(agents)
        command = self._rng.choice(SYNTHETIC_COMMANDS)
        try:
            await self._store.log_activity(
                agent.id, ActivityKind.COMMAND.value, command, {"automated": True},
            )
        except StationError as e:
            logger.warning("synthetic_activity_failed", agent=agent.id, error=str(e))


def _read_cpu_times(stat_path: str = "/proc/stat") -> tuple[int, int]:
    """(total, idle) jiffies from the aggregate cpu line."""
    with open(stat_path) as f:
        parts = f.readline().split()
    values = [int(x) for x in parts[1:]]
    idle = values[3] + (values[4] if len(values) > 4 else 0)
    return sum(values), idle


def _read_meminfo(meminfo_path: str = "/proc/meminfo") -> tuple[int, int]:
    """(total, available) memory in kB."""
    meminfo: dict[str, int] = {}
    with open(meminfo_path) as f:
        for line in f:
            key, _, rest = line.partition(":")
            fields = rest.split()
            if fields:
                meminfo[key.strip()] = int(fields[0])
    total = meminfo.get("MemTotal", 0)
    return total, meminfo.get("MemAvailable", meminfo.get("MemFree", 0))


class MetricsSampler:
    """Samples host CPU and memory from /proc.

    CPU usage is the busy share since the previous sample, so the first
    sample after start reports usage since boot.
    """

    def __init__(self, bus: ChangeBus | None = None,
                 stat_path: str = "/proc/stat", meminfo_path: str = "/proc/meminfo") -> None:
        self._bus = bus
        self._stat_path = stat_path
        self._meminfo_path = meminfo_path
        self._prev_cpu: tuple[int, int] | None = None

    def sample(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "cpu": {"usage": 0, "cores": os.cpu_count() or 1},
            "memory": {"used": 0.0, "total": 0.0, "percentage": 0},
            "timestamp": format_ts(utc_now()),
        }
        try:
            total, idle = _read_cpu_times(self._stat_path)
            if self._prev_cpu is not None:
                d_total = total - self._prev_cpu[0]
                d_idle = idle - self._prev_cpu[1]
            else:
                d_total, d_idle = total, idle
            self._prev_cpu = (total, idle)
            data["cpu"]["usage"] = round(100 * (1 - d_idle / max(d_total, 1)))
        except (OSError, ValueError, IndexError) as e:
            logger.debug("cpu_sample_unavailable", error=str(e))
        try:
            total_kb, avail_kb = _read_meminfo(self._meminfo_path)
            used_kb = total_kb - avail_kb
            gib = 1024 * 1024
            data["memory"] = {
                "used": round(used_kb / gib, 2),
                "total": round(total_kb / gib, 2),
                "percentage": round(100 * used_kb / max(total_kb, 1)),
            }
        except (OSError, ValueError) as e:
            logger.debug("memory_sample_unavailable", error=str(e))
        return data

    async def __call__(self, event_data: dict[str, Any]) -> None:
        if self._bus is not None:
            await self._bus.emit(ChangeKind.SYSTEM, {"data": self.sample()}, source="metrics")
