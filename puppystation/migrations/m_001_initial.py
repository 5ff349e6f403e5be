"""Migration 001: agents, activities and reviews tables."""

from __future__ import annotations

import aiosqlite


async def upgrade(db: aiosqlite.Connection) -> None:
    await db.execute("""
        CREATE TABLE IF NOT EXISTS agents (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            emoji TEXT DEFAULT '🐕',
            role TEXT DEFAULT 'Agent',
            model TEXT DEFAULT 'unknown',
            status TEXT DEFAULT 'idle'
                CHECK (status IN ('active', 'idle', 'busy')),
            current_task TEXT DEFAULT NULL,
            updated_at TEXT NOT NULL
        )
    """)
    # AUTOINCREMENT: ids are never reused after retention trimming.
    await db.execute("""
        CREATE TABLE IF NOT EXISTS activities (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            agent_id TEXT NOT NULL REFERENCES agents(id),
            type TEXT DEFAULT 'info',
            description TEXT NOT NULL,
            metadata_json TEXT DEFAULT '{}',
            timestamp TEXT NOT NULL
        )
    """)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS reviews (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            agent_id TEXT NOT NULL REFERENCES agents(id),
            question TEXT NOT NULL,
            priority TEXT DEFAULT 'medium',
            status TEXT DEFAULT 'pending'
                CHECK (status IN ('pending', 'resolved')),
            created_at TEXT NOT NULL,
            resolved_at TEXT DEFAULT NULL
        )
    """)
    await db.execute("CREATE INDEX IF NOT EXISTS idx_reviews_status ON reviews(status)")
    await db.execute("CREATE INDEX IF NOT EXISTS idx_reviews_agent_id ON reviews(agent_id)")
