"""Migration 002: composite indexes matching the activity feed ordering."""

from __future__ import annotations

import aiosqlite


async def upgrade(db: aiosqlite.Connection) -> None:
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_activities_recent "
        "ON activities(timestamp DESC, id DESC)"
    )
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_activities_agent_recent "
        "ON activities(agent_id, timestamp DESC, id DESC)"
    )
