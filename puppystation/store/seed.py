"""Provisioning of the fixed fleet and the demonstration review queue."""

from __future__ import annotations

import logging

from puppystation.store.store import Store
from puppystation.types import ActivityKind, AgentStatus, ReviewPriority

_logger = logging.getLogger(__name__)

FLEET = [
    {
        "agent_id": "buppy",
        "name": "Buppy",
        "emoji": "🐕",
        "role": "Primary Coordinator",
        "model": "moonshot/kimi-k2.5",
        "task": "Coordinating agent fleet and managing Admin requests",
    },
    {
        "agent_id": "zoomie",
        "name": "Zoomie",
        "emoji": "⚡",
        "role": "AIGIS Lead Developer",
        "model": "nvidia/kimi-k2.5",
        "task": "Implementing iOS Screen Time integration for AIGIS Phase 2",
    },
    {
        "agent_id": "mechly",
        "name": "Mechly",
        "emoji": "🔧",
        "role": "Tool Builder & Infrastructure",
        "model": "moonshot/kimi-k2.5",
        "task": "Building Agent Dashboard UI and API endpoints",
    },
]

SAMPLE_REVIEWS = [
    ("zoomie", "Should we use SwiftUI or UIKit for the AIGIS iOS enforcement module?", ReviewPriority.HIGH),
    ("mechly", "What database should we use for the agent session storage - SQLite or PostgreSQL?", ReviewPriority.MEDIUM),
    ("buppy", "Should we add voice notifications for urgent reviews?", ReviewPriority.LOW),
]


async def seed_fleet(store: Store) -> bool:
    """Provision the fleet and sample reviews into an empty database.

    Returns False, doing nothing, when any agent already exists.
    """
    if await store.agent_count() > 0:
        return False

    for spec in FLEET:
        agent = await store.create_agent(
            spec["agent_id"],
            spec["name"],
            emoji=spec["emoji"],
            role=spec["role"],
            model=spec["model"],
            status=AgentStatus.ACTIVE,
            current_task=spec["task"],
        )
        await store.log_activity(
            agent.id,
            ActivityKind.SYSTEM.value,
            f"{agent.name} initialized and ready",
            {"source": "database_seed"},
        )
    _logger.info("Seeded %d agents", len(FLEET))

    for agent_id, question, priority in SAMPLE_REVIEWS:
        await store.add_review(agent_id, question, priority)
    _logger.info("Seeded %d sample reviews", len(SAMPLE_REVIEWS))
    return True
