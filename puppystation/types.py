"""Core types shared across all puppystation subsystems."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeAlias

from pydantic import BaseModel, Field

# ── ID Types ──────────────────────────────────────────────────────────────────

AgentId: TypeAlias = str
ActivityId: TypeAlias = int
ReviewId: TypeAlias = int


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(ts: datetime) -> str:
    """Fixed-width UTC timestamp; lexical order equals chronological order."""
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_ts(value: str) -> datetime:
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)


# ── Enumerations ──────────────────────────────────────────────────────────────


class AgentStatus(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    BUSY = "busy"


class ReviewPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"


_PRIORITY_RANK = {"high": 1, "medium": 2, "low": 3}


def priority_rank(priority: str) -> int:
    """Sort rank for a review priority; unknown values sort last."""
    return _PRIORITY_RANK.get(str(getattr(priority, "value", priority)), 4)


class ActivityKind(str, Enum):
    """Known activity tags. Anything else is carried as OTHER."""

    COMMAND = "command"
    FILE_UPDATE = "file_update"
    SOUL_UPDATE = "soul_update"
    IDENTITY_UPDATE = "identity_update"
    CONFIG_UPDATE = "config_update"
    MEMORY_UPDATE = "memory_update"
    STATUS_CHANGE = "status_change"
    TASK_UPDATE = "task_update"
    REVIEW_CREATED = "review_created"
    REVIEW_RESOLVED = "review_resolved"
    SYSTEM = "system"
    OTHER = "other"

    @classmethod
    def parse(cls, tag: str) -> ActivityKind:
        try:
            return cls(tag)
        except ValueError:
            return cls.OTHER


# ── Entities ──────────────────────────────────────────────────────────────────


class Agent(BaseModel):
    """One fleet member."""

    id: AgentId
    name: str
    emoji: str = "🐕"
    role: str = "Agent"
    model: str = "unknown"
    status: AgentStatus = AgentStatus.IDLE
    current_task: str | None = None
    updated_at: datetime = Field(default_factory=utc_now)


class ActivityRecord(BaseModel):
    """One immutable entry in the activity log.

    ``type`` keeps the raw tag as reported by the producer so new kinds
    round-trip untouched; ``kind`` is the typed view of it.
    """

    id: ActivityId
    agent_id: AgentId
    type: str = "info"
    description: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    agent_name: str | None = None
    agent_emoji: str | None = None

    @property
    def kind(self) -> ActivityKind:
        return ActivityKind.parse(self.type)

    def sort_key(self) -> tuple[datetime, int]:
        return (self.timestamp, self.id)


class Review(BaseModel):
    """A question raised by an agent, awaiting resolution."""

    id: ReviewId
    agent_id: AgentId
    question: str
    priority: ReviewPriority = ReviewPriority.MEDIUM
    status: ReviewStatus = ReviewStatus.PENDING
    created_at: datetime
    resolved_at: datetime | None = None
    agent_name: str | None = None
    agent_emoji: str | None = None

    def sort_key(self) -> tuple[int, float, int]:
        return (priority_rank(self.priority), -self.created_at.timestamp(), -self.id)
