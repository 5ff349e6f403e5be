"""Change Bus — ordered pub/sub for completed state changes.

Every Store mutation emits exactly one StateChange per logical event.
The bus stamps each change with a process-wide sequence number and
routes it to subscribers. Supports kind wildcards: "review*" matches
"review" and "review-resolved".
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from puppystation.types import utc_now

_logger = logging.getLogger(__name__)

ChangeHandler = Callable[["StateChange"], Awaitable[None]]


class ChangeKind(str, Enum):
    INIT = "init"
    ACTIVITY = "activity"
    TASK_UPDATE = "task_update"
    STATUS_UPDATE = "status_update"
    REVIEW = "review"
    REVIEW_RESOLVED = "review-resolved"
    SYSTEM = "system"


class StateChange(BaseModel):
    """One completed mutation, as seen by push consumers."""

    seq: int
    kind: ChangeKind
    agent_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    source: str = ""
    timestamp: datetime = Field(default_factory=utc_now)

    def to_message(self) -> dict[str, Any]:
        """Wire form: a flat object tagged by ``type``."""
        return {"type": self.kind.value, "seq": self.seq, **self.data}


class ChangeBus:
    """Async pub/sub bus with a strictly increasing sequence per change.

    Handlers are awaited before ``emit`` returns, so a caller that emits
    while holding a lock gets its changes delivered in emission order.
    Handlers must therefore be quick (enqueue, never block on I/O).
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[ChangeHandler]] = defaultdict(list)
        self._seq = 0

    def subscribe(self, pattern: str, handler: ChangeHandler) -> None:
        """Subscribe to changes whose kind matches a pattern."""
        self._subscribers[pattern].append(handler)

    def unsubscribe(self, pattern: str, handler: ChangeHandler) -> None:
        """Remove a subscription."""
        handlers = self._subscribers.get(pattern, [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(
        self,
        kind: ChangeKind | str,
        data: dict[str, Any] | None = None,
        agent_id: str | None = None,
        source: str = "",
    ) -> StateChange:
        """Emit a change to all matching subscribers."""
        kind = ChangeKind(kind)
        self._seq += 1
        change = StateChange(
            seq=self._seq,
            kind=kind,
            agent_id=agent_id,
            data=data or {},
            source=source,
        )

        tasks = []
        for pattern, handlers in self._subscribers.items():
            if fnmatch.fnmatch(change.kind.value, pattern):
                for handler in handlers:
                    tasks.append(handler(change))

        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    _logger.warning("Change handler failed for %s: %s", change.kind.value, result)

        return change

    @property
    def last_seq(self) -> int:
        return self._seq

    @property
    def subscriber_count(self) -> int:
        return sum(len(h) for h in self._subscribers.values())
