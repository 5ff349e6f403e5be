"""Workspace watcher: reports files added or edited under a directory.

Compares modification-time snapshots taken off the event loop; deletions
are not reported since nothing is logged for them.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from puppystation.triggers.base import BaseTrigger, TriggerConfig

Snapshot = dict[str, float]


class FileWatchTrigger(BaseTrigger):
    """Config params:
        path: directory (or single file) to watch
        patterns: glob patterns, default ["*"]
        ignore: path segments to skip, default ["node_modules"]
        max_depth: directory levels below ``path`` to scan, default 3
        interval: seconds between scans, default 2
    """

    kind = "file_watch"
    default_interval = 2

    def __init__(self, config: TriggerConfig, handler=None) -> None:
        super().__init__(config, handler)
        params = config.params
        self.root = Path(params.get("path", ".")).expanduser()
        self.patterns: list[str] = list(params.get("patterns", ["*"]))
        self.ignore = frozenset(params.get("ignore", ["node_modules"]))
        self.max_depth = int(params.get("max_depth", 3))
        self._baseline: Snapshot = {}

    async def prime(self) -> None:
        self._baseline = await asyncio.to_thread(self.scan)

    async def poll(self) -> dict[str, Any] | None:
        current = await asyncio.to_thread(self.scan)
        changes = changed_files(self._baseline, current)
        self._baseline = current
        if not changes:
            return None
        return {"path": str(self.root), "changes": changes}

    def _watched(self, f: Path) -> bool:
        try:
            rel = f.relative_to(self.root)
        except ValueError:
            return False
        if len(rel.parts) - 1 > self.max_depth:
            return False
        if self.ignore.intersection(rel.parts):
            return False
        return f.is_file()

    def scan(self) -> Snapshot:
        """Modification time of every watched file."""
        if self.root.is_file():
            candidates = [self.root]
        elif self.root.is_dir():
            candidates = [f for pattern in self.patterns for f in self.root.rglob(pattern) if self._watched(f)]
        else:
            return {}
        snapshot: Snapshot = {}
        for f in candidates:
            try:
                snapshot[str(f)] = f.stat().st_mtime
            except OSError:
                continue  # removed mid-scan
        return snapshot


def changed_files(before: Snapshot, after: Snapshot) -> dict[str, list[str]]:
    """Paths new in ``after`` or with a different mtime; empty if none."""
    added = sorted(p for p in after if p not in before)
    modified = sorted(p for p in after if p in before and after[p] != before[p])
    if not added and not modified:
        return {}
    return {"added": added, "modified": modified}
