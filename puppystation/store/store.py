"""Store — the single writer for agents, the activity log and the review queue.

Every public write runs under one asyncio lock and one SQLite transaction,
together with its paired activity insert and retention trim. Changes are
emitted on the ChangeBus after commit but before the lock is released,
so subscribers see them in exactly the order the writes were applied.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator

import aiosqlite
import orjson

from puppystation.events.bus import ChangeBus, ChangeKind
from puppystation.exceptions import ConflictError, NotFoundError, StorageError, ValidationError
from puppystation.migrations.runner import apply_migrations
from puppystation.store.reader import (
    AGENT_COLUMNS,
    agent_from_row,
    review_from_row,
)
from puppystation.types import (
    ActivityKind,
    ActivityRecord,
    Agent,
    AgentStatus,
    Review,
    ReviewPriority,
    ReviewStatus,
    format_ts,
    parse_ts,
    utc_now,
)

_logger = logging.getLogger(__name__)


def _excerpt(text: str, size: int = 50) -> str:
    return f"{text[:size]}..."


def _require_text(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    return value.strip()


class Store:
    """Durable keeper of agent, activity and review state, backed by SQLite."""

    def __init__(
        self,
        db_path: str | Path,
        bus: ChangeBus | None = None,
        retention_per_agent: int = 50,
        retention_global: int = 1000,
    ) -> None:
        self._db_path = str(db_path)
        self._bus = bus
        self.retention_per_agent = retention_per_agent
        self.retention_global = retention_global
        self._lock = asyncio.Lock()
        self._db: aiosqlite.Connection | None = None
        self._last_ts: datetime | None = None

    @property
    def db_path(self) -> str:
        return self._db_path

    async def initialize(self) -> None:
        """Apply migrations and open the writer connection."""
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        applied = await apply_migrations(self._db_path)
        if applied:
            _logger.info("Database migrated to version %d at %s", applied[-1], self._db_path)

        # Autocommit mode: transactions are opened explicitly in _transaction().
        self._db = await aiosqlite.connect(self._db_path, isolation_level=None)
        await self._db.execute("PRAGMA journal_mode = WAL")
        await self._db.execute("PRAGMA foreign_keys = ON")
        await self._db.execute("PRAGMA busy_timeout = 5000")

        cursor = await self._db.execute(
            "SELECT MAX(ts) FROM ("
            " SELECT MAX(updated_at) AS ts FROM agents"
            " UNION ALL SELECT MAX(timestamp) FROM activities"
            " UNION ALL SELECT MAX(created_at) FROM reviews)"
        )
        row = await cursor.fetchone()
        self._last_ts = parse_ts(row[0]) if row and row[0] else None

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    # ── Internals ─────────────────────────────────────────────────

    def _tick(self) -> datetime:
        """Server clock, never earlier than any timestamp already written."""
        now = utc_now()
        if self._last_ts is not None and now < self._last_ts:
            now = self._last_ts
        self._last_ts = now
        return now

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        if self._db is None:
            raise StorageError("Store is not initialized")
        db = self._db
        try:
            await db.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e
        try:
            yield db
        except sqlite3.Error as e:
            await db.execute("ROLLBACK")
            _logger.error("Write rolled back: %s", e)
            raise StorageError(str(e)) from e
        except BaseException:
            await db.execute("ROLLBACK")
            raise
        else:
            try:
                await db.execute("COMMIT")
            except sqlite3.Error as e:
                await db.execute("ROLLBACK")
                raise StorageError(str(e)) from e

    async def _emit(self, kind: ChangeKind, data: dict[str, Any], agent_id: str | None) -> None:
        if self._bus is not None:
            await self._bus.emit(kind, data, agent_id=agent_id, source="store")

    @staticmethod
    async def _load_agent(db: aiosqlite.Connection, agent_id: str) -> Agent:
        cursor = await db.execute(f"SELECT {AGENT_COLUMNS} FROM agents WHERE id = ?", (agent_id,))
        row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"Agent not found: {agent_id}")
        return agent_from_row(row)

    @staticmethod
    async def _load_review(db: aiosqlite.Connection, review_id: int) -> Review:
        cursor = await db.execute(
            """SELECT r.id, r.agent_id, r.question, r.priority, r.status,
                      r.created_at, r.resolved_at, ag.name, ag.emoji
               FROM reviews r JOIN agents ag ON r.agent_id = ag.id
               WHERE r.id = ?""",
            (review_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"Review not found: {review_id}")
        return review_from_row(row)

    async def _insert_activity(
        self,
        db: aiosqlite.Connection,
        agent: Agent,
        activity_type: str,
        description: str,
        metadata: dict[str, Any],
    ) -> ActivityRecord:
        """Append one record, touch the agent and trim. Caller holds the lock."""
        ts = self._tick()
        stamp = format_ts(ts)
        cursor = await db.execute(
            """INSERT INTO activities (agent_id, type, description, metadata_json, timestamp)
               VALUES (?, ?, ?, ?, ?)""",
            (agent.id, activity_type, description, orjson.dumps(metadata).decode(), stamp),
        )
        activity_id = cursor.lastrowid
        await db.execute("UPDATE agents SET updated_at = ? WHERE id = ?", (stamp, agent.id))
        await self._trim(db, agent.id)
        return ActivityRecord(
            id=activity_id,
            agent_id=agent.id,
            type=activity_type,
            description=description,
            metadata=metadata,
            timestamp=ts,
            agent_name=agent.name,
            agent_emoji=agent.emoji,
        )

    async def _trim(self, db: aiosqlite.Connection, agent_id: str | None) -> int:
        """Evict the oldest records, by (timestamp, id), beyond the retention bounds."""
        removed = 0
        if agent_id is not None:
            cursor = await db.execute(
                """DELETE FROM activities
                   WHERE agent_id = ? AND id NOT IN (
                       SELECT id FROM activities WHERE agent_id = ?
                       ORDER BY timestamp DESC, id DESC LIMIT ?)""",
                (agent_id, agent_id, self.retention_per_agent),
            )
            removed += max(cursor.rowcount, 0)
        cursor = await db.execute(
            """DELETE FROM activities WHERE id NOT IN (
                   SELECT id FROM activities ORDER BY timestamp DESC, id DESC LIMIT ?)""",
            (self.retention_global,),
        )
        removed += max(cursor.rowcount, 0)
        return removed

    # ── Write operations ──────────────────────────────────────────

    async def create_agent(
        self,
        agent_id: str,
        name: str,
        emoji: str = "🐕",
        role: str = "Agent",
        model: str = "unknown",
        status: AgentStatus | str = AgentStatus.IDLE,
        current_task: str | None = None,
    ) -> Agent:
        """Provision a fleet member. Raises ConflictError if the id is taken."""
        agent_id = _require_text(agent_id, "id")
        name = _require_text(name, "name")
        try:
            status = AgentStatus(status)
        except ValueError as e:
            raise ValidationError(f"Invalid status: {status}") from e

        async with self._lock:
            async with self._transaction() as db:
                cursor = await db.execute("SELECT 1 FROM agents WHERE id = ?", (agent_id,))
                if await cursor.fetchone() is not None:
                    raise ConflictError(f"Agent already exists: {agent_id}")
                ts = self._tick()
                await db.execute(
                    """INSERT INTO agents (id, name, emoji, role, model, status, current_task, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (agent_id, name, emoji, role, model, status.value, current_task, format_ts(ts)),
                )
            agent = Agent(
                id=agent_id, name=name, emoji=emoji, role=role, model=model,
                status=status, current_task=current_task, updated_at=ts,
            )
            # Viewers learn about new fleet members the same way as status changes.
            await self._emit(
                ChangeKind.STATUS_UPDATE,
                {
                    "agentId": agent_id,
                    "status": status.value,
                    "agent": agent.model_dump(mode="json"),
                    "timestamp": format_ts(ts),
                },
                agent_id,
            )
        _logger.info("Provisioned agent %s (%s)", agent_id, name)
        return agent

    async def log_activity(
        self,
        agent_id: str,
        activity_type: str,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> ActivityRecord:
        """The single insertion entry point for the activity log."""
        activity_type = _require_text(activity_type, "type")
        description = _require_text(description, "description")
        if metadata is None:
            metadata = {}
        if not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object")

        async with self._lock:
            async with self._transaction() as db:
                agent = await self._load_agent(db, agent_id)
                record = await self._insert_activity(db, agent, activity_type, description, metadata)
            await self._emit_activity(record)
        return record

    async def _emit_activity(self, record: ActivityRecord) -> None:
        await self._emit(
            ChangeKind.ACTIVITY,
            {"agentId": record.agent_id, "activity": record.model_dump(mode="json")},
            record.agent_id,
        )

    async def update_agent_task(self, agent_id: str, task: str) -> Agent:
        """Set the current task, force the agent active, and log it."""
        task = _require_text(task, "task")

        async with self._lock:
            async with self._transaction() as db:
                agent = await self._load_agent(db, agent_id)
                ts = self._tick()
                await db.execute(
                    "UPDATE agents SET current_task = ?, status = 'active', updated_at = ? WHERE id = ?",
                    (task, format_ts(ts), agent_id),
                )
                record = await self._insert_activity(
                    db, agent, ActivityKind.TASK_UPDATE.value, f"Updated task: {task}", {"task": task},
                )
                agent = await self._load_agent(db, agent_id)
            await self._emit(
                ChangeKind.TASK_UPDATE,
                {
                    "agentId": agent_id,
                    "task": task,
                    "agent": agent.model_dump(mode="json"),
                    "timestamp": format_ts(ts),
                },
                agent_id,
            )
            await self._emit_activity(record)
        return agent

    async def update_agent_status(self, agent_id: str, status: AgentStatus | str) -> Agent:
        """Change an agent's status and log a status_change activity."""
        try:
            status = AgentStatus(status)
        except ValueError as e:
            raise ValidationError(
                f"Invalid status: {status!r} (expected one of {[s.value for s in AgentStatus]})"
            ) from e

        async with self._lock:
            async with self._transaction() as db:
                agent = await self._load_agent(db, agent_id)
                ts = self._tick()
                await db.execute(
                    "UPDATE agents SET status = ?, updated_at = ? WHERE id = ?",
                    (status.value, format_ts(ts), agent_id),
                )
                record = await self._insert_activity(
                    db, agent, ActivityKind.STATUS_CHANGE.value,
                    f"Status changed to {status.value}", {"status": status.value},
                )
                agent = await self._load_agent(db, agent_id)
            await self._emit(
                ChangeKind.STATUS_UPDATE,
                {
                    "agentId": agent_id,
                    "status": status.value,
                    "agent": agent.model_dump(mode="json"),
                    "timestamp": format_ts(ts),
                },
                agent_id,
            )
            await self._emit_activity(record)
        return agent

    async def add_review(
        self,
        agent_id: str,
        question: str,
        priority: ReviewPriority | str | None = ReviewPriority.MEDIUM,
    ) -> Review:
        """Queue a question for review, paired with a review_created activity."""
        question = _require_text(question, "question")
        try:
            priority = ReviewPriority(priority or ReviewPriority.MEDIUM)
        except ValueError as e:
            raise ValidationError(f"Invalid priority: {priority!r}") from e

        async with self._lock:
            async with self._transaction() as db:
                agent = await self._load_agent(db, agent_id)
                ts = self._tick()
                cursor = await db.execute(
                    """INSERT INTO reviews (agent_id, question, priority, status, created_at)
                       VALUES (?, ?, ?, 'pending', ?)""",
                    (agent_id, question, priority.value, format_ts(ts)),
                )
                review_id = cursor.lastrowid
                record = await self._insert_activity(
                    db, agent, ActivityKind.REVIEW_CREATED.value,
                    f"Created review: {_excerpt(question)}",
                    {"review_id": review_id, "priority": priority.value},
                )
                review = await self._load_review(db, review_id)
            await self._emit(
                ChangeKind.REVIEW,
                {"review": review.model_dump(mode="json"), "activity": record.model_dump(mode="json")},
                agent_id,
            )
        return review

    async def resolve_review(self, review_id: int) -> Review:
        """Resolve a pending review. Resolving twice raises NotFoundError and emits nothing."""
        async with self._lock:
            async with self._transaction() as db:
                review = await self._load_review(db, review_id)
                if review.status is not ReviewStatus.PENDING:
                    raise NotFoundError(f"Review not pending: {review_id}")
                ts = self._tick()
                await db.execute(
                    "UPDATE reviews SET status = 'resolved', resolved_at = ? WHERE id = ? AND status = 'pending'",
                    (format_ts(ts), review_id),
                )
                agent = await self._load_agent(db, review.agent_id)
                record = await self._insert_activity(
                    db, agent, ActivityKind.REVIEW_RESOLVED.value,
                    f"Resolved review: {_excerpt(review.question)}",
                    {"review_id": review_id},
                )
                review = await self._load_review(db, review_id)
            await self._emit(
                ChangeKind.REVIEW_RESOLVED,
                {
                    "reviewId": review_id,
                    "review": review.model_dump(mode="json"),
                    "activity": record.model_dump(mode="json"),
                },
                review.agent_id,
            )
        return review

    async def trim_retention(self) -> int:
        """Apply retention bounds to every agent. Returns the number of records evicted."""
        async with self._lock:
            async with self._transaction() as db:
                cursor = await db.execute("SELECT id FROM agents")
                agent_ids = [row[0] for row in await cursor.fetchall()]
                removed = 0
                for agent_id in agent_ids:
                    removed += await self._trim(db, agent_id)
                if not agent_ids:
                    removed += await self._trim(db, None)
        if removed:
            _logger.info("Retention trimmed %d activity records", removed)
        return removed

    # ── Housekeeping reads ────────────────────────────────────────

    async def agent_count(self) -> int:
        if self._db is None:
            raise StorageError("Store is not initialized")
        async with self._lock:
            cursor = await self._db.execute("SELECT COUNT(*) FROM agents")
            row = await cursor.fetchone()
        return row[0]

    async def stats(self) -> dict[str, int]:
        """Row counts, for the status endpoint and CLI."""
        if self._db is None:
            raise StorageError("Store is not initialized")
        # Counted under the write lock so an open transaction is never seen.
        async with self._lock:
            cursor = await self._db.execute(
                """SELECT
                       (SELECT COUNT(*) FROM agents),
                       (SELECT COUNT(*) FROM activities),
                       (SELECT COUNT(*) FROM reviews),
                       (SELECT COUNT(*) FROM reviews WHERE status = 'pending')"""
            )
            row = await cursor.fetchone()
        return {
            "agents": row[0],
            "activities": row[1],
            "reviews": row[2],
            "pending_reviews": row[3],
        }

    def __repr__(self) -> str:
        return f"Store(db_path={self._db_path!r}, open={self._db is not None})"
