"""Projection Reader — read-only views over the station database.

Runs on its own connection. With the database in WAL mode a reader sees
the last committed state and never blocks the writer, so a multi-step
Store operation is either fully visible or not at all.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

import aiosqlite
import orjson

from puppystation.exceptions import NotFoundError, StorageError, ValidationError
from puppystation.types import ActivityRecord, Agent, Review, parse_ts

_logger = logging.getLogger(__name__)

AGENT_COLUMNS = "id, name, emoji, role, model, status, current_task, updated_at"

# high=1, medium=2, low=3, anything else last
PRIORITY_ORDER_SQL = """
    CASE r.priority
        WHEN 'high' THEN 1
        WHEN 'medium' THEN 2
        WHEN 'low' THEN 3
        ELSE 4
    END
"""


def agent_from_row(row: Any) -> Agent:
    return Agent(
        id=row[0],
        name=row[1],
        emoji=row[2],
        role=row[3],
        model=row[4],
        status=row[5],
        current_task=row[6],
        updated_at=parse_ts(row[7]),
    )


def activity_from_row(row: Any) -> ActivityRecord:
    return ActivityRecord(
        id=row[0],
        agent_id=row[1],
        type=row[2],
        description=row[3],
        metadata=orjson.loads(row[4] or "{}"),
        timestamp=parse_ts(row[5]),
        agent_name=row[6] if len(row) > 6 else None,
        agent_emoji=row[7] if len(row) > 7 else None,
    )


def review_from_row(row: Any) -> Review:
    return Review(
        id=row[0],
        agent_id=row[1],
        question=row[2],
        priority=row[3],
        status=row[4],
        created_at=parse_ts(row[5]),
        resolved_at=parse_ts(row[6]) if row[6] else None,
        agent_name=row[7],
        agent_emoji=row[8],
    )


class ProjectionReader:
    """Consumer-facing queries: agent list, feeds, review queue."""

    def __init__(self, db_path: str, default_limit: int = 20, max_limit: int = 200) -> None:
        self._db_path = db_path
        self._default_limit = default_limit
        self._max_limit = max_limit
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        self._db = await aiosqlite.connect(self._db_path)
        await self._db.execute("PRAGMA query_only = ON")
        await self._db.execute("PRAGMA busy_timeout = 5000")

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    def clamp_limit(self, limit: int | None) -> int:
        if limit is None:
            return self._default_limit
        if limit < 1:
            raise ValidationError(f"limit must be positive, got {limit}")
        return min(limit, self._max_limit)

    async def _fetchall(self, sql: str, params: tuple = ()) -> list[Any]:
        if self._db is None:
            raise StorageError("Projection reader is not open")
        try:
            cursor = await self._db.execute(sql, params)
            return list(await cursor.fetchall())
        except sqlite3.Error as e:
            _logger.error("Read failed: %s", e)
            raise StorageError(str(e)) from e

    async def list_agents(self) -> list[Agent]:
        rows = await self._fetchall(f"SELECT {AGENT_COLUMNS} FROM agents ORDER BY name, id")
        return [agent_from_row(r) for r in rows]

    async def get_agent(self, agent_id: str) -> Agent:
        rows = await self._fetchall(f"SELECT {AGENT_COLUMNS} FROM agents WHERE id = ?", (agent_id,))
        if not rows:
            raise NotFoundError(f"Agent not found: {agent_id}")
        return agent_from_row(rows[0])

    async def recent_activities(self, limit: int | None = None) -> list[ActivityRecord]:
        """Newest activity across the whole fleet."""
        rows = await self._fetchall(
            """SELECT a.id, a.agent_id, a.type, a.description, a.metadata_json,
                      a.timestamp, ag.name, ag.emoji
               FROM activities a
               JOIN agents ag ON a.agent_id = ag.id
               ORDER BY a.timestamp DESC, a.id DESC
               LIMIT ?""",
            (self.clamp_limit(limit),),
        )
        return [activity_from_row(r) for r in rows]

    async def agent_activities(self, agent_id: str, limit: int | None = None) -> list[ActivityRecord]:
        """Newest activity for one agent."""
        agent = await self.get_agent(agent_id)
        rows = await self._fetchall(
            """SELECT id, agent_id, type, description, metadata_json, timestamp
               FROM activities
               WHERE agent_id = ?
               ORDER BY timestamp DESC, id DESC
               LIMIT ?""",
            (agent_id, self.clamp_limit(limit)),
        )
        records = [activity_from_row(r) for r in rows]
        for record in records:
            record.agent_name = agent.name
            record.agent_emoji = agent.emoji
        return records

    async def pending_reviews(self) -> list[Review]:
        rows = await self._fetchall(
            f"""SELECT r.id, r.agent_id, r.question, r.priority, r.status,
                       r.created_at, r.resolved_at, ag.name, ag.emoji
                FROM reviews r
                JOIN agents ag ON r.agent_id = ag.id
                WHERE r.status = 'pending'
                ORDER BY {PRIORITY_ORDER_SQL}, r.created_at DESC, r.id DESC"""
        )
        return [review_from_row(r) for r in rows]

    async def get_review(self, review_id: int) -> Review:
        rows = await self._fetchall(
            """SELECT r.id, r.agent_id, r.question, r.priority, r.status,
                      r.created_at, r.resolved_at, ag.name, ag.emoji
               FROM reviews r
               JOIN agents ag ON r.agent_id = ag.id
               WHERE r.id = ?""",
            (review_id,),
        )
        if not rows:
            raise NotFoundError(f"Review not found: {review_id}")
        return review_from_row(rows[0])

    async def snapshot(self) -> dict[str, Any]:
        """Initial state handed to a new push connection."""
        agents = await self.list_agents()
        reviews = await self.pending_reviews()
        return {
            "agents": [a.model_dump(mode="json") for a in agents],
            "reviews": [r.model_dump(mode="json") for r in reviews],
        }

    def __repr__(self) -> str:
        return f"ProjectionReader(db_path={self._db_path!r}, open={self._db is not None})"
